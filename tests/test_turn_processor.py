import pytest

from autopilot.domain import Author, ConversationKey, LockSource, MediaRef, MessageRecord, PendingMessage
from autopilot.services.llm.base import OutboundMedia
from autopilot.services.turn_processor import TurnProcessor

from tests.conftest import CHANNEL, NOW, USER, active_channel

KEY = ConversationKey(CHANNEL, USER)
NOW_MS = int(NOW * 1000)


def pending(text="hi", message_id="false_u_1", **kwargs):
    return PendingMessage(message_id=message_id, text=text, received_at_ms=NOW_MS, **kwargs)


def record(text, author, message_id, at_ms=NOW_MS, recipient=USER):
    return MessageRecord(
        channel_id=CHANNEL,
        sender_id=CHANNEL if author != Author.USER else USER,
        recipient_id=recipient if author != Author.USER else CHANNEL,
        message_id=message_id,
        text=text,
        timestamp_ms=at_ms,
        author=author,
    )


def audits(store):
    return store.by_author(Author.SYSTEM)


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_reply_sent_and_recorded(self, runtime, store, gateway, generator):
        await runtime.turn_processor.process(KEY, [pending("hello")])

        assert gateway.presence == ["seen", "typing"]
        assert gateway.sent_texts == [(CHANNEL, USER, "Thanks!")]
        reply = store.by_author(Author.AUTOMATION)[0]
        assert reply.message_id == f"true_{USER}_OUT1"
        assert reply.model_used == "test-model"
        assert reply.token_usage == 42
        assert store.credit_deductions == 1

    @pytest.mark.asyncio
    async def test_echo_registered_before_send(self, runtime, gateway):
        seen_before_send = []

        async def check(channel_id, recipient_id, text):
            seen_before_send.append(runtime.echo_registry.match_text(recipient_id, text))

        gateway.on_send = check
        await runtime.turn_processor.process(KEY, [pending()])

        assert seen_before_send == [True]
        assert runtime.echo_registry.match_message_id(f"true_{USER}_OUT1")

    @pytest.mark.asyncio
    async def test_own_key_does_not_spend_credit(self, runtime, store):
        store.channels[CHANNEL] = active_channel(api_key="sk-own-key-123", cheap_engine=False, message_credit=0)
        await runtime.turn_processor.process(KEY, [pending()])
        assert store.credit_deductions == 0
        assert store.by_author(Author.AUTOMATION)

    @pytest.mark.asyncio
    async def test_history_excludes_current_batch(self, runtime, store, generator):
        store.messages.append(record("earlier question", Author.USER, "false_u_0", at_ms=NOW_MS - 5000))
        store.messages.append(record("hi", Author.USER, "false_u_1"))

        await runtime.turn_processor.process(KEY, [pending("hi")])

        history_ids = [r.message_id for r in generator.calls[0]["history"]]
        assert history_ids == ["false_u_0"]

    @pytest.mark.asyncio
    async def test_system_prompt_passed_as_instructions(self, runtime, store, generator):
        store.channels[CHANNEL] = active_channel(system_prompt="You sell shoes.")
        await runtime.turn_processor.process(KEY, [pending()])
        assert generator.calls[0]["instructions"] == "You sell shoes."


class TestTurnAssembly:
    @pytest.mark.asyncio
    async def test_quoted_message_from_store(self, runtime, store, generator):
        store.messages.append(record("Red or blue?", Author.AUTOMATION, "true_out_9", at_ms=NOW_MS - 1000))

        await runtime.turn_processor.process(
            KEY, [pending("red please", reply_to_id="true_out_9", quoted_text="stale copy")]
        )

        assert generator.calls[0]["turn_text"] == '[Replying to: "Red or blue?"]\nred please'

    @pytest.mark.asyncio
    async def test_quoted_text_fallback(self, runtime, generator):
        await runtime.turn_processor.process(KEY, [pending("this one", quoted_text="Blue shoes")])
        assert generator.calls[0]["turn_text"] == '[Replying to: "Blue shoes"]\nthis one'

    @pytest.mark.asyncio
    async def test_image_is_described_and_stored(self, runtime, store, generator):
        image = MediaRef(url="http://gw/img.jpg", kind="image", mime="image/jpeg")
        store.messages.append(record("[Image Message]", Author.USER, "false_u_img"))

        await runtime.turn_processor.process(KEY, [pending("", message_id="false_u_img", media_refs=[image])])

        assert generator.described == [image]
        assert generator.calls[0]["turn_text"] == "[Image Analysis Result]\nred shoes"
        assert generator.calls[0]["media_refs"] == [image]
        assert store.by_author(Author.USER)[0].text == "[Image Analysis] red shoes"
        assert store.by_author(Author.AUTOMATION)[0].token_usage == 49

    @pytest.mark.asyncio
    async def test_voice_note_transcript_used(self, runtime, generator):
        generator.media_text = "do you deliver to Dhaka"
        audio = MediaRef(url="http://gw/a.ogg", kind="audio")

        await runtime.turn_processor.process(KEY, [pending("", media_refs=[audio])])

        assert generator.calls[0]["turn_text"] == "do you deliver to Dhaka"

    @pytest.mark.asyncio
    async def test_empty_turn_is_skipped(self, runtime, generator, gateway):
        await runtime.turn_processor.process(KEY, [pending("")])
        assert generator.calls == []
        assert gateway.sent_texts == []


class TestGates:
    @pytest.mark.asyncio
    async def test_locked_conversation_not_answered(self, runtime, generator, gateway):
        await runtime.lock.lock(KEY, 300, LockSource.ADMIN_REPLY)

        await runtime.turn_processor.process(KEY, [pending()])

        assert generator.calls == []
        assert gateway.sent_texts == []

    @pytest.mark.asyncio
    async def test_missing_channel_audited(self, runtime, store, generator):
        del store.channels[CHANNEL]

        await runtime.turn_processor.process(KEY, [pending()])

        assert generator.calls == []
        notice = audits(store)[0]
        assert notice.text == "[SYSTEM ERROR] Session not configured."
        assert notice.message_id.startswith("sys_")
        assert notice.status == "system_error"

    @pytest.mark.asyncio
    async def test_out_of_credit_audited(self, runtime, store, generator):
        store.channels[CHANNEL] = active_channel(message_credit=0)
        await runtime.turn_processor.process(KEY, [pending()])
        assert generator.calls == []
        assert audits(store)[0].text == "[SYSTEM ERROR] Out of Credits."

    @pytest.mark.asyncio
    async def test_group_replies_disabled(self, runtime, store, generator):
        store.channels[CHANNEL] = active_channel(group_reply=False)
        group = ConversationKey(CHANNEL, "120363000000@g.us")
        await runtime.turn_processor.process(group, [pending()])
        assert generator.calls == []

    @pytest.mark.asyncio
    async def test_blocking_label_stops_turn(self, runtime, store, gateway, generator):
        gateway.labels = ["AdminHandle"]

        await runtime.turn_processor.process(KEY, [pending()])

        assert generator.calls == []
        assert store.locks[KEY].source == LockSource.LABEL

        gateway.labels = []
        await runtime.turn_processor.process(KEY, [pending(message_id="false_u_2")])
        assert len(generator.calls) == 1

    @pytest.mark.asyncio
    async def test_label_lookup_failure_does_not_block(self, runtime, gateway, generator):
        gateway.labels = None
        await runtime.turn_processor.process(KEY, [pending()])
        assert len(generator.calls) == 1

    @pytest.mark.asyncio
    async def test_operator_active_and_cap_reached(self, runtime, store, generator):
        for n in range(20):
            store.messages.append(record(f"reply {n}", Author.AUTOMATION, f"bot_{n}", at_ms=NOW_MS - 60_000 + n))
        store.messages.append(record("let me check", Author.ADMIN, "true_admin", at_ms=NOW_MS - 1000))

        await runtime.turn_processor.process(KEY, [pending()])

        assert generator.calls == []
        assert store.locks[KEY].source == LockSource.ADMIN_REPLY

    @pytest.mark.asyncio
    async def test_cap_ignored_without_operator(self, runtime, store, generator):
        for n in range(20):
            store.messages.append(record(f"reply {n}", Author.AUTOMATION, f"bot_{n}", at_ms=NOW_MS - 60_000 + n))

        await runtime.turn_processor.process(KEY, [pending()])

        assert len(generator.calls) == 1


class TestFailures:
    @pytest.mark.asyncio
    async def test_no_reply_is_audited(self, runtime, store, gateway, generator):
        generator.reply_text = None

        await runtime.turn_processor.process(KEY, [pending()])

        assert gateway.sent_texts == []
        notice = audits(store)[0]
        assert notice.text == "[SYSTEM] No reply generated."
        assert notice.status == "system_notice"

    @pytest.mark.asyncio
    async def test_generator_error_is_audited(self, runtime, store, gateway, generator):
        generator.error = RuntimeError("model unavailable")

        await runtime.turn_processor.process(KEY, [pending()])

        assert gateway.sent_texts == []
        notice = audits(store)[0]
        assert notice.text == "[SYSTEM ERROR] model unavailable"
        assert notice.message_id.startswith("err_")


class TestLateTakeover:
    @pytest.mark.asyncio
    async def test_lock_during_generation_withholds_reply(self, runtime, store, gateway, generator):
        async def operator_steps_in():
            await runtime.lock.lock(KEY, 86400, LockSource.EMOJI)

        generator.on_generate = operator_steps_in

        await runtime.turn_processor.process(KEY, [pending()])

        assert len(generator.calls) == 1
        assert gateway.sent_texts == []
        assert gateway.presence == []
        assert store.by_author(Author.AUTOMATION) == []
        assert store.credit_deductions == 0
        assert audits(store)[0].text == "[SYSTEM] Reply withheld: conversation was taken over."

    @pytest.mark.asyncio
    async def test_lock_during_typing_delay_withholds_reply(self, runtime, store, gateway, generator, clock):
        async def operator_replies_while_typing(seconds):
            await runtime.lock.lock(KEY, 300, LockSource.ADMIN_REPLY)

        processor = TurnProcessor(
            store=store,
            gateway=gateway,
            generator=generator,
            lock=runtime.lock,
            echo_registry=runtime.echo_registry,
            clock=clock,
            sleep_func=operator_replies_while_typing,
        )

        await processor.process(KEY, [pending()])

        assert gateway.presence == ["seen", "typing"]
        assert gateway.sent_texts == []
        assert not runtime.echo_registry.match_text(USER, "Thanks!")
        assert store.credit_deductions == 0

    @pytest.mark.asyncio
    async def test_reply_that_locks_is_still_sent(self, runtime, store, gateway, generator):
        generator.reply_text = "Let me get a colleague 🛑 [ADD_LABEL: admincall]"

        await runtime.turn_processor.process(KEY, [pending()])

        assert len(gateway.sent_texts) == 1
        assert len(store.by_author(Author.AUTOMATION)) == 1
        assert await runtime.lock.is_locked(KEY)


class TestAuditIds:
    @pytest.mark.asyncio
    async def test_same_tick_failures_keep_separate_records(self, runtime, store, generator):
        other = ConversationKey(CHANNEL, "8801700000002@c.us")
        generator.error = RuntimeError("model unavailable")

        await runtime.turn_processor.process(KEY, [pending()])
        await runtime.turn_processor.process(other, [pending(message_id="false_u_2")])

        records = audits(store)
        assert len(records) == 2
        assert {r.recipient_id for r in records} == {USER, other.participant_id}
        assert records[0].message_id.startswith("err_8801700000001_")
        assert records[1].message_id.startswith("err_8801700000002_")

    @pytest.mark.asyncio
    async def test_repeated_audits_in_one_conversation_are_kept(self, runtime, store, generator):
        generator.reply_text = None

        await runtime.turn_processor.process(KEY, [pending()])
        await runtime.turn_processor.process(KEY, [pending()])

        assert len(audits(store)) == 2


class TestDirectives:
    @pytest.mark.asyncio
    async def test_order_saved_labelled_and_locked(self, runtime, store, gateway, generator):
        generator.reply_text = 'Order placed!\n[SAVE_ORDER: {"product_name": "Red shoes", "price": 50, "location": "Dhaka"}]'

        await runtime.turn_processor.process(KEY, [pending("I'll take them")])

        order = store.orders[0]
        assert order.product_name == "Red shoes"
        assert order.price == "50"
        assert order.number == "8801700000001"
        assert gateway.applied_labels == ["ordertrack"]
        assert store.locks[KEY].source == LockSource.ORDER_FLOW
        assert gateway.sent_texts == [(CHANNEL, USER, "Order placed!")]

    @pytest.mark.asyncio
    async def test_blocking_label_directive_locks(self, runtime, store, gateway, generator):
        generator.reply_text = "A colleague will call you. [ADD_LABEL: admincall]"

        await runtime.turn_processor.process(KEY, [pending()])

        assert gateway.applied_labels == ["admincall"]
        assert store.locks[KEY].source == LockSource.LABEL
        assert gateway.sent_texts[0][2] == "A colleague will call you."

    @pytest.mark.asyncio
    async def test_plain_label_directive_does_not_lock(self, runtime, store, gateway, generator):
        generator.reply_text = "Noted! [ADD_LABEL: vip]"
        await runtime.turn_processor.process(KEY, [pending()])
        assert gateway.applied_labels == ["vip"]
        assert KEY not in store.locks

    @pytest.mark.asyncio
    async def test_images_sent_and_remembered(self, runtime, store, gateway, generator):
        generator.reply_text = "Here they are\nIMAGE: Red shoes | https://cdn.example.com/red.jpg"
        generator.media = [OutboundMedia(url="https://cdn.example.com/blue.png", title="Blue shoes")]

        await runtime.turn_processor.process(KEY, [pending()])

        assert [m[2] for m in gateway.sent_media] == [
            "https://cdn.example.com/blue.png",
            "https://cdn.example.com/red.jpg",
        ]
        assert runtime.echo_registry.match_text(USER, "Blue shoes")
        memory = [r for r in audits(store) if r.status == "image_memory"][0]
        assert "Red shoes | https://cdn.example.com/red.jpg" in memory.text

    @pytest.mark.asyncio
    async def test_agent_lock_emoji_hands_over(self, runtime, store, gateway, generator):
        generator.reply_text = "Connecting you to a person 🛑"

        await runtime.turn_processor.process(KEY, [pending()])

        assert store.locks[KEY].source == LockSource.EMOJI
        assert len(gateway.sent_texts) == 1

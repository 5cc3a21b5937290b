"""Turns a released debounce batch into (at most) one automated reply."""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from autopilot.config import settings
from autopilot.domain import (
    Author,
    ChannelRecord,
    ConversationKey,
    LockSource,
    LockState,
    MediaRef,
    MessageRecord,
    OrderRecord,
    PendingMessage,
    synthetic_message_id,
)
from autopilot.logging_config import conversation_logger, get_logger
from autopilot.services.alert_service import alert_error
from autopilot.services.conversation_lock import ConversationLock
from autopilot.services.directives import ORDER_LABEL, ReplyDirectives, extract_directives
from autopilot.services.echo_registry import EchoRegistry
from autopilot.services.gateway.base import MessagingGateway
from autopilot.services.llm.base import GeneratedReply, ResponseGenerator
from autopilot.services.session_service import ChannelPolicy, authorize_channel, channel_policy
from autopilot.services.store.base import ConversationStore
from autopilot.services.text import detect_handover_command

logger = get_logger("turn_processor")

IMAGE_PLACEHOLDER = "[Image Message]"
AUDIO_PLACEHOLDER = "[Audio Message]"
ADMIN_LOOKBACK = 10
_WITHHELD = object()


@dataclass
class Turn:
    text: str
    media_refs: list[MediaRef] = field(default_factory=list)
    sender_name: Optional[str] = None
    vision_tokens: int = 0


class TurnProcessor:
    def __init__(
        self,
        *,
        store: ConversationStore,
        gateway: MessagingGateway,
        generator: ResponseGenerator,
        lock: ConversationLock,
        echo_registry: EchoRegistry,
        typing_delay_seconds: float = settings.typing_delay_seconds,
        admin_daily_reply_cap: int = settings.admin_daily_reply_cap,
        clock: Callable[[], float] = time.time,
        sleep_func=asyncio.sleep,
    ):
        self.store = store
        self.gateway = gateway
        self.generator = generator
        self.lock = lock
        self.echo_registry = echo_registry
        self.typing_delay_seconds = typing_delay_seconds
        self.admin_daily_reply_cap = admin_daily_reply_cap
        self._clock = clock
        self._sleep = sleep_func

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def process(self, key: ConversationKey, batch: list[PendingMessage]) -> None:
        """Run one turn. Never raises: failures end up as a system audit record."""
        log = conversation_logger(logger, key.channel_id, key.participant_id)
        try:
            await self._run(key, batch, log)
        except Exception as e:
            log.error(f"Turn failed: {e}", exc_info=True)
            await self._audit(key, f"[SYSTEM ERROR] {e}", prefix="err")
            await alert_error("Turn failed", {"channel": key.channel_id, "chat": key.participant_id, "error": str(e)})

    async def _run(self, key: ConversationKey, batch: list[PendingMessage], log) -> None:
        if not batch:
            return

        channel = await self.store.get_channel(key.channel_id)
        policy = channel_policy(channel)

        if await self._blocked_by_label(key, policy, log):
            return
        lock_state = await self.lock.resolve(key, policy.lock_emojis, policy.unlock_emojis, policy.history_scan)
        if lock_state.is_active(self._now_ms()):
            log.info("Conversation locked; skipping reply", context={"source": _source(lock_state)})
            return

        gate = authorize_channel(channel)
        if not gate.ok:
            log.info(f"Reply gate closed: {gate.error_code}")
            await self._audit(key, f"[SYSTEM ERROR] {gate.error}", prefix="sys")
            return
        if key.participant_id.endswith("@g.us") and not policy.group_reply:
            log.info("Group replies disabled for channel")
            return

        turn = await self._build_turn(key, batch, channel)
        if not turn.text:
            log.info("Nothing to answer in batch")
            return

        if await self._admin_cap_reached(key, log):
            return

        # Media analysis awaited above; a human may have stepped in meanwhile.
        if await self.lock.is_locked(key):
            log.info("Conversation locked during turn assembly; skipping reply")
            return

        batch_ids = {message.message_id for message in batch}
        history = await self.store.get_recent_messages(key.channel_id, key.participant_id, policy.history_limit)
        history = [record for record in history if record.message_id not in batch_ids]
        reply = await self.generator.generate(
            turn.text,
            history,
            turn.media_refs,
            lock_state=lock_state,
            instructions=channel.system_prompt if channel else None,
        )
        if reply is None:
            log.info("Generator chose not to reply")
            await self._audit(key, "[SYSTEM] No reply generated.", prefix="sys", status="system_notice")
            return
        if await self._withheld(key, log, "generation"):
            return

        directives = extract_directives(reply.text, reply.media)
        message_id = await self._send(key, directives, log)
        if message_id is _WITHHELD:
            return
        await self._record_reply(key, channel, reply, directives, message_id, turn)

        # Locks raised by the reply's own directives never withhold that reply.
        await self._apply_directives(key, directives, policy, log)
        await self._apply_agent_command(key, directives.text, policy)

    async def _withheld(self, key: ConversationKey, log, stage: str) -> bool:
        if not await self.lock.is_locked(key):
            return False
        log.info(f"Conversation locked during {stage}; reply withheld")
        await self._audit(key, "[SYSTEM] Reply withheld: conversation was taken over.", prefix="sys", status="system_notice")
        return True

    async def _blocked_by_label(self, key: ConversationKey, policy: ChannelPolicy, log) -> bool:
        labels = await self.gateway.get_labels(key.channel_id, key.participant_id)
        if labels is None:
            return False
        if policy.labels_block_turn(labels):
            log.info("Blocking label present; stopping turn", context={"labels": labels})
            await self.lock.lock(key, settings.label_lock_ttl_seconds, LockSource.LABEL)
            return True
        await self.lock.release_label(key)
        return False

    async def _build_turn(self, key: ConversationKey, batch: list[PendingMessage], channel: Optional[ChannelRecord]) -> Turn:
        lines = []
        reply_to_id = None
        quoted_fallback = None
        sender_name = None
        for message in batch:
            if message.text:
                lines.append(message.text)
            if message.reply_to_id:
                reply_to_id = message.reply_to_id
                if message.quoted_text:
                    quoted_fallback = message.quoted_text
            elif message.quoted_text and not reply_to_id:
                quoted_fallback = message.quoted_text
            if message.sender_name and message.sender_name != "Unknown":
                sender_name = message.sender_name
        combined = "\n".join(lines).strip()

        quoted = None
        if reply_to_id:
            try:
                quoted = await self.store.get_message_text(reply_to_id)
            except Exception as e:
                logger.warning(f"Quoted message lookup failed for {reply_to_id}: {e}")
        if not (quoted and quoted.strip()):
            quoted = quoted_fallback
        if quoted and quoted.strip():
            combined = f'[Replying to: "{quoted.strip()}"]\n{combined}'.strip()

        vision_prompt = channel.vision_prompt if channel else None
        image_texts: list[str] = []
        audio_texts: list[str] = []
        has_images = has_audio = False
        tokens = 0
        for message in batch:
            for ref in message.media_refs:
                if ref.kind == "image":
                    has_images = True
                elif ref.kind == "audio":
                    has_audio = True
                else:
                    continue
                text, used = await self._describe(key, message, ref, vision_prompt)
                tokens += used
                if text:
                    (image_texts if ref.kind == "image" else audio_texts).append(text)

        sections = [combined] if combined else []
        if has_images:
            sections.append("[Image Analysis Result]\n" + ("\n".join(image_texts) or IMAGE_PLACEHOLDER))
        if has_audio:
            sections.append("\n".join(audio_texts) or AUDIO_PLACEHOLDER)

        media_refs = [ref for message in batch for ref in message.media_refs]
        return Turn(text="\n\n".join(sections), media_refs=media_refs, sender_name=sender_name, vision_tokens=tokens)

    async def _describe(self, key: ConversationKey, message: PendingMessage, ref: MediaRef, prompt: Optional[str]) -> tuple[str, int]:
        try:
            analysis = await self.generator.describe_media(ref, prompt)
        except Exception as e:
            logger.warning(f"Media analysis failed for {message.message_id}: {e}")
            return "", 0
        text = (analysis.text or "").strip()
        if not text:
            return "", analysis.tokens

        stored = f"[Image Analysis] {text}" if ref.kind == "image" else text
        try:
            await self.store.append_message(
                MessageRecord(
                    channel_id=key.channel_id,
                    sender_id=key.participant_id,
                    recipient_id=key.channel_id,
                    message_id=message.message_id,
                    text=stored,
                    timestamp_ms=message.received_at_ms,
                    author=Author.USER,
                    is_group=key.participant_id.endswith("@g.us"),
                )
            )
        except Exception as e:
            logger.warning(f"Failed to store media analysis for {message.message_id}: {e}")
        return text, analysis.tokens

    async def _admin_cap_reached(self, key: ConversationKey, log) -> bool:
        recent = await self.store.get_recent_messages(key.channel_id, key.participant_id, ADMIN_LOOKBACK)
        if not any(record.author == Author.ADMIN for record in recent):
            return False
        now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        count = await self.store.count_automation_replies_since(key.channel_id, key.participant_id, day_start)
        if count < self.admin_daily_reply_cap:
            return False
        log.info(f"Operator active and daily automated reply cap reached ({count})")
        await self.lock.lock(key, settings.admin_handover_ttl_seconds, LockSource.ADMIN_REPLY)
        return True

    async def _apply_directives(self, key: ConversationKey, directives: ReplyDirectives, policy: ChannelPolicy, log) -> None:
        if directives.order is not None:
            order = directives.order
            try:
                await self.store.save_order(
                    OrderRecord(
                        channel_id=key.channel_id,
                        participant_id=key.participant_id,
                        product_name=str(order.get("product_name") or "Unknown"),
                        location=str(order.get("location") or ""),
                        product_quantity=str(order.get("product_quantity") or "1"),
                        price=str(order["price"]) if order.get("price") is not None else None,
                    )
                )
                await self.gateway.apply_label(key.channel_id, key.participant_id, ORDER_LABEL)
                await self.lock.lock(key, settings.order_lock_ttl_seconds, LockSource.ORDER_FLOW)
                log.info("Order saved from reply")
            except Exception as e:
                log.error(f"Failed to save order from reply: {e}")

        for label in directives.labels:
            applied = await self.gateway.apply_label(key.channel_id, key.participant_id, label)
            if not applied:
                log.warning(f"Could not apply label '{label}'")
            if policy.label_blocks_on_directive(label):
                await self.lock.lock(key, settings.label_lock_ttl_seconds, LockSource.LABEL)

    async def _apply_agent_command(self, key: ConversationKey, text: str, policy: ChannelPolicy) -> None:
        command = detect_handover_command(text, policy.lock_emojis, policy.unlock_emojis)
        if command is None:
            return
        if command.action == "lock":
            await self.lock.lock(key, settings.emoji_lock_ttl_seconds, LockSource.EMOJI)
        else:
            await self.lock.unlock(key)

    async def _send(self, key: ConversationKey, directives: ReplyDirectives, log):
        """Send text then media. Returns the text's message id, or _WITHHELD."""
        channel_id, recipient = key.channel_id, key.participant_id
        await self.gateway.send_presence(channel_id, recipient, "seen")
        await self.gateway.send_presence(channel_id, recipient, "typing")
        await self._sleep(self.typing_delay_seconds)
        if await self._withheld(key, log, "typing delay"):
            return _WITHHELD

        message_id = None
        if directives.text:
            self.echo_registry.record(recipient, directives.text)
            message_id = await self.gateway.send_text(channel_id, recipient, directives.text)
            self.echo_registry.record_message_id(message_id)

        for media in directives.media:
            if media.title and media.title.strip():
                self.echo_registry.record(recipient, media.title)
            media_id = await self.gateway.send_media(channel_id, recipient, media.url, media.title)
            self.echo_registry.record_message_id(media_id)
        return message_id

    async def _record_reply(
        self,
        key: ConversationKey,
        channel: ChannelRecord,
        reply: GeneratedReply,
        directives: ReplyDirectives,
        message_id: Optional[str],
        turn: Turn,
    ) -> None:
        now_ms = self._now_ms()
        if not channel.uses_own_key:
            try:
                await self.store.decrement_credit(key.channel_id)
            except Exception as e:
                logger.warning(f"Credit deduction failed for {key.channel_id}: {e}")

        tokens = reply.total_tokens
        if tokens is not None or turn.vision_tokens:
            tokens = (tokens or 0) + turn.vision_tokens

        await self.store.append_message(
            MessageRecord(
                channel_id=key.channel_id,
                sender_id=key.channel_id,
                recipient_id=key.participant_id,
                message_id=message_id or synthetic_message_id("bot", key.participant_id, now_ms),
                text=directives.text,
                timestamp_ms=now_ms,
                author=Author.AUTOMATION,
                status="sent",
                model_used=reply.model,
                token_usage=tokens,
            )
        )

        if directives.media:
            summary = " ; ".join(f"{media.title or 'Image'} | {media.url}" for media in directives.media)
            await self.store.append_message(
                MessageRecord(
                    channel_id=key.channel_id,
                    sender_id=key.channel_id,
                    recipient_id=key.participant_id,
                    message_id=synthetic_message_id("imgmem", key.participant_id, now_ms),
                    text=f"[IMAGE MEMORY] Sent product images in this reply: {summary}",
                    timestamp_ms=now_ms,
                    author=Author.SYSTEM,
                    status="image_memory",
                )
            )

    async def _audit(self, key: ConversationKey, text: str, prefix: str, status: str = "system_error") -> None:
        now_ms = self._now_ms()
        try:
            await self.store.append_message(
                MessageRecord(
                    channel_id=key.channel_id,
                    sender_id=key.channel_id,
                    recipient_id=key.participant_id,
                    message_id=synthetic_message_id(prefix, key.participant_id, now_ms),
                    text=text,
                    timestamp_ms=now_ms,
                    author=Author.SYSTEM,
                    status=status,
                )
            )
        except Exception as e:
            logger.error(f"Failed to write audit record for {key}: {e}")


def _source(state: LockState) -> Optional[str]:
    return state.source.value if state.source else None

import asyncio
from datetime import datetime
from typing import List, Optional

import pytest

from autopilot.domain import (
    Author,
    ChannelRecord,
    ConversationKey,
    LockState,
    MediaRef,
    MessageRecord,
    OrderRecord,
)
from autopilot.services.gateway.base import MessagingGateway
from autopilot.services.llm.base import GeneratedReply, MediaAnalysis, ResponseGenerator
from autopilot.services.runtime import AutopilotRuntime
from autopilot.services.store.base import ConversationStore

NOW = 1_700_000_000.0
CHANNEL = "shop"
USER = "8801700000001@c.us"
BUSINESS = "8801900000000@c.us"


class FakeClock:
    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def instant_sleep(seconds: float) -> None:
    await asyncio.sleep(0)


class GatedSleep:
    """Sleep that blocks until the test opens the gate."""

    def __init__(self):
        self.calls: list[float] = []
        self.gate = asyncio.Event()

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        await self.gate.wait()


class FakeStore(ConversationStore):
    def __init__(self):
        self.messages: List[MessageRecord] = []
        self.locks: dict[ConversationKey, LockState] = {}
        self.channels: dict[str, ChannelRecord] = {}
        self.contacts: dict[ConversationKey, Optional[str]] = {}
        self.orders: List[OrderRecord] = []
        self.credit_deductions = 0
        self.fail_lock_writes = False
        self.lock_reads = 0

    async def append_message(self, record: MessageRecord) -> None:
        for index, existing in enumerate(self.messages):
            if existing.message_id == record.message_id:
                self.messages[index] = record
                return
        self.messages.append(record)

    async def get_message_text(self, message_id: str) -> Optional[str]:
        for record in self.messages:
            if record.message_id == message_id:
                return record.text
        return None

    async def get_recent_messages(self, channel_id: str, participant_id: str, limit: int) -> List[MessageRecord]:
        matching = [
            record
            for record in self.messages
            if record.channel_id == channel_id and participant_id in (record.sender_id, record.recipient_id)
        ]
        matching.sort(key=lambda record: record.timestamp_ms, reverse=True)
        return matching[:limit]

    async def count_automation_replies_since(self, channel_id: str, participant_id: str, since: datetime) -> int:
        since_ms = int(since.timestamp() * 1000)
        return sum(
            1
            for record in self.messages
            if record.channel_id == channel_id
            and record.recipient_id == participant_id
            and record.author == Author.AUTOMATION
            and record.timestamp_ms >= since_ms
        )

    async def get_lock_state(self, key: ConversationKey) -> Optional[LockState]:
        self.lock_reads += 1
        return self.locks.get(key)

    async def set_lock_state(self, state: LockState) -> None:
        if self.fail_lock_writes:
            raise RuntimeError("database unavailable")
        self.locks[state.conversation_key] = state

    async def touch_contact(self, key: ConversationKey, name: Optional[str] = None) -> None:
        self.contacts[key] = name

    async def get_channel(self, channel_id: str) -> Optional[ChannelRecord]:
        return self.channels.get(channel_id)

    async def register_channel(self, channel_id: str, status: str = "connected") -> ChannelRecord:
        channel = self.channels.setdefault(channel_id, ChannelRecord(channel_id=channel_id, status=status))
        return channel

    async def update_channel_status(self, channel_id: str, status: str, active: Optional[bool] = None) -> None:
        channel = self.channels.setdefault(channel_id, ChannelRecord(channel_id=channel_id))
        channel.status = status
        if active is not None:
            channel.active = active

    async def decrement_credit(self, channel_id: str, amount: int = 1) -> None:
        self.credit_deductions += amount
        channel = self.channels.get(channel_id)
        if channel and channel.message_credit > 0:
            channel.message_credit -= amount

    async def save_order(self, order: OrderRecord) -> None:
        self.orders.append(order)

    def by_author(self, author: Author) -> List[MessageRecord]:
        return [record for record in self.messages if record.author == author]


class FakeGateway(MessagingGateway):
    def __init__(self):
        self.sent_texts: list[tuple[str, str, str]] = []
        self.sent_media: list[tuple[str, str, str, Optional[str]]] = []
        self.presence: list[str] = []
        self.applied_labels: list[str] = []
        self.labels: Optional[list[str]] = []
        self.on_send = None
        self._counter = 0

    async def send_text(self, channel_id: str, recipient_id: str, text: str) -> Optional[str]:
        if self.on_send is not None:
            await self.on_send(channel_id, recipient_id, text)
        self.sent_texts.append((channel_id, recipient_id, text))
        self._counter += 1
        return f"true_{recipient_id}_OUT{self._counter}"

    async def send_media(self, channel_id: str, recipient_id: str, url: str, caption: Optional[str] = None) -> Optional[str]:
        self.sent_media.append((channel_id, recipient_id, url, caption))
        self._counter += 1
        return f"true_{recipient_id}_IMG{self._counter}"

    async def send_presence(self, channel_id: str, recipient_id: str, kind: str) -> None:
        self.presence.append(kind)

    async def get_labels(self, channel_id: str, participant_id: str) -> Optional[List[str]]:
        return self.labels

    async def apply_label(self, channel_id: str, participant_id: str, name: str) -> bool:
        self.applied_labels.append(name)
        return True


class FakeGenerator(ResponseGenerator):
    def __init__(self, reply_text: Optional[str] = "Thanks!", media_text: str = "red shoes"):
        self.reply_text = reply_text
        self.media_text = media_text
        self.media: list = []
        self.calls: list[dict] = []
        self.described: list[MediaRef] = []
        self.error: Optional[Exception] = None
        self.on_generate = None

    async def generate(self, turn_text, history, media_refs, *, lock_state=None, instructions=None):
        self.calls.append(
            {"turn_text": turn_text, "history": history, "media_refs": list(media_refs), "instructions": instructions}
        )
        if self.on_generate is not None:
            await self.on_generate()
        if self.error is not None:
            raise self.error
        if self.reply_text is None:
            return None
        return GeneratedReply(
            text=self.reply_text, model="test-model", media=list(self.media), usage={"total_tokens": 42}
        )

    async def describe_media(self, media: MediaRef, prompt: Optional[str] = None) -> MediaAnalysis:
        self.described.append(media)
        return MediaAnalysis(text=self.media_text, tokens=7)


def active_channel(channel_id: str = CHANNEL, **overrides) -> ChannelRecord:
    values = {"subscription_status": "active", "message_credit": 10}
    values.update(overrides)
    return ChannelRecord(channel_id=channel_id, **values)


def message_envelope(
    *,
    body: str = "hi",
    message_id: str = "false_8801700000001@c.us_AAA",
    from_me: bool = False,
    from_id: str = USER,
    to_id: str = BUSINESS,
    timestamp: Optional[int] = None,
    **payload_extra,
) -> dict:
    payload = {
        "id": message_id,
        "from": from_id,
        "to": to_id,
        "fromMe": from_me,
        "body": body,
        "timestamp": int(NOW) if timestamp is None else timestamp,
    }
    payload.update(payload_extra)
    return {"event": "message", "session": CHANNEL, "payload": payload}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    fake = FakeStore()
    fake.channels[CHANNEL] = active_channel()
    return fake


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def generator():
    return FakeGenerator()


def outbound_envelope(body: str, message_id: str, **kwargs) -> dict:
    """A fromMe message from the business phone to the user."""
    return message_envelope(body=body, message_id=message_id, from_me=True, from_id=BUSINESS, to_id=USER, **kwargs)


@pytest.fixture
def runtime(store, gateway, generator, clock):
    return AutopilotRuntime(store, gateway, generator, clock=clock, sleep_func=instant_sleep)

"""Core value types shared by the classifier, lock, debounce and turn pipeline."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional
from uuid import uuid4


class EventKind(str, Enum):
    MESSAGE = "message"
    STATE_CHANGE = "stateChange"
    LABEL_APPLIED = "labelApplied"
    LABEL_REMOVED = "labelRemoved"


class Author(str, Enum):
    USER = "user"
    ADMIN = "admin"
    AUTOMATION = "bot"
    SYSTEM = "system"


class LockSource(str, Enum):
    EMOJI = "emoji"
    LABEL = "label"
    ADMIN_REPLY = "adminReply"
    ORDER_FLOW = "orderFlow"


def bare_participant(participant_id: Optional[str]) -> str:
    """Strip the gateway suffix (``@c.us``, ``@s.whatsapp.net``) from an id."""
    return (participant_id or "").split("@")[0]


def synthetic_message_id(prefix: str, participant_id: str, at_ms: int) -> str:
    """Id for records the gateway never numbered (audits, notes, unconfirmed sends)."""
    return f"{prefix}_{bare_participant(participant_id)}_{at_ms}_{uuid4().hex}"


@dataclass(frozen=True)
class ConversationKey:
    channel_id: str
    participant_id: str

    def __str__(self) -> str:
        return f"{self.channel_id}_{self.participant_id}"


@dataclass(frozen=True)
class MediaRef:
    url: str
    kind: str  # image, audio, other
    mime: Optional[str] = None


@dataclass
class InboundEvent:
    channel_id: str
    event_kind: EventKind
    message_id: str = ""
    from_id: str = ""
    to_id: str = ""
    body: str = ""
    media_refs: list[MediaRef] = field(default_factory=list)
    is_outbound_echo: bool = False
    timestamp_seconds: int = 0
    quoted_message_id: Optional[str] = None
    quoted_text: Optional[str] = None
    push_name: Optional[str] = None
    message_type: str = "chat"
    has_media: bool = False
    status: Optional[str] = None
    label_name: Optional[str] = None
    label_chat_id: Optional[str] = None

    @property
    def participant_id(self) -> str:
        if self.event_kind in (EventKind.LABEL_APPLIED, EventKind.LABEL_REMOVED):
            return self.label_chat_id or self.to_id or ""
        if self.is_outbound_echo:
            return self.to_id
        return self.from_id

    @property
    def key(self) -> ConversationKey:
        return ConversationKey(self.channel_id, self.participant_id)

    @property
    def is_group(self) -> bool:
        return self.participant_id.endswith("@g.us")


@dataclass
class PendingMessage:
    """One user message waiting in a debounce buffer."""

    message_id: str
    text: str
    received_at_ms: int
    reply_to_id: Optional[str] = None
    quoted_text: Optional[str] = None
    sender_name: Optional[str] = None
    media_refs: list[MediaRef] = field(default_factory=list)

    @classmethod
    def from_event(cls, event: InboundEvent, received_at_ms: int) -> "PendingMessage":
        return cls(
            message_id=event.message_id,
            text=event.body,
            received_at_ms=received_at_ms,
            reply_to_id=event.quoted_message_id,
            quoted_text=event.quoted_text,
            sender_name=event.push_name,
            media_refs=list(event.media_refs),
        )


@dataclass
class MessageRecord:
    channel_id: str
    sender_id: str
    recipient_id: str
    message_id: str
    text: str
    timestamp_ms: int
    author: Author
    status: str = "received"
    model_used: Optional[str] = None
    token_usage: Optional[int] = None
    is_group: bool = False


@dataclass
class LockState:
    conversation_key: ConversationKey
    locked_until_ms: Optional[int] = None
    source: Optional[LockSource] = None
    updated_at_ms: int = 0

    def is_active(self, now_ms: int) -> bool:
        return self.locked_until_ms is not None and self.locked_until_ms > now_ms

    @classmethod
    def unlocked(cls, key: ConversationKey, updated_at_ms: int = 0) -> "LockState":
        return cls(conversation_key=key, updated_at_ms=updated_at_ms)


@dataclass
class ChannelRecord:
    """Per-channel session row as far as the automation core is concerned."""

    channel_id: str
    status: str = "connected"
    active: bool = True
    subscription_status: Optional[str] = None
    message_credit: int = 0
    api_key: Optional[str] = None
    cheap_engine: bool = True
    wait_time_seconds: Optional[float] = None
    lock_emojis: Optional[str] = None
    unlock_emojis: Optional[str] = None
    block_emoji: Optional[str] = None
    unblock_emoji: Optional[str] = None
    emoji_check_count: Optional[int] = None
    blocking_labels: Optional[str] = None
    history_limit: Optional[int] = None
    group_reply: bool = True
    system_prompt: Optional[str] = None
    vision_prompt: Optional[str] = None

    @property
    def uses_own_key(self) -> bool:
        return bool(self.api_key and len(self.api_key) > 5 and self.cheap_engine is False)


@dataclass
class OrderRecord:
    channel_id: str
    participant_id: str
    product_name: str
    location: str = ""
    product_quantity: str = "1"
    price: Optional[str] = None

    @property
    def number(self) -> str:
        return bare_participant(self.participant_id)

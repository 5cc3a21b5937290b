"""Inbound event classification and routing.

``classify`` is a priority-ordered table of guards; the first guard that returns
a classification wins. It never mutates shared state, so classifying the same
event twice against the same registry state gives the same answer. ``handle``
is the side-effecting half: it claims the message id, then routes the event
to the admin, user, state-change or label handler.
"""

import asyncio
import time
from enum import Enum
from typing import Awaitable, Callable, Optional

from autopilot.config import settings
from autopilot.domain import (
    Author,
    ConversationKey,
    EventKind,
    InboundEvent,
    LockSource,
    MessageRecord,
    PendingMessage,
    bare_participant,
    synthetic_message_id,
)
from autopilot.logging_config import get_logger
from autopilot.services.backlog_filter import BacklogFilter
from autopilot.services.conversation_lock import ConversationLock
from autopilot.services.debounce import DebounceAggregator
from autopilot.services.dedup import RecentMessageIds
from autopilot.services.echo_registry import EchoRegistry
from autopilot.services.session_service import ChannelPolicy, channel_policy, map_session_status
from autopilot.services.store.base import ConversationStore
from autopilot.services.text import detect_handover_command, normalize_text

logger = get_logger("event_classifier")

BROADCAST_ID = "status@broadcast"
IGNORED_MESSAGE_TYPES = {"reaction", "e2e_notification", "protocol", "ciphertext", "revoked"}


class Classification(str, Enum):
    USER_MESSAGE = "user_message"
    SELF_ECHO = "self_echo"
    ADMIN_MESSAGE = "admin_message"
    DUPLICATE = "duplicate"
    BACKLOG = "backlog"
    IGNORED = "ignored"


Guard = Callable[[InboundEvent], Awaitable[Optional[Classification]]]


def media_placeholder(event: InboundEvent) -> str:
    kinds = {ref.kind for ref in event.media_refs}
    if "audio" in kinds or event.message_type in ("ptt", "audio"):
        return "[Voice Message]"
    if "image" in kinds or event.message_type == "image":
        return "[Image Message]"
    return "[Media Message]" if event.has_media else ""


class EventClassifier:
    def __init__(
        self,
        *,
        store: ConversationStore,
        echo_registry: EchoRegistry,
        lock: ConversationLock,
        backlog: BacklogFilter,
        recent_ids: RecentMessageIds,
        debounce: DebounceAggregator,
        db_echo_delay_seconds: float = settings.db_echo_delay_seconds,
        db_echo_lookback: int = settings.db_echo_lookback,
        clock: Callable[[], float] = time.time,
        sleep_func=asyncio.sleep,
    ):
        self.store = store
        self.echo_registry = echo_registry
        self.lock = lock
        self.backlog = backlog
        self.recent_ids = recent_ids
        self.debounce = debounce
        self.db_echo_delay_seconds = db_echo_delay_seconds
        self.db_echo_lookback = db_echo_lookback
        self._clock = clock
        self._sleep = sleep_func
        self._guards: tuple[Guard, ...] = (
            self._guard_backlog,
            self._guard_self_originated,
            self._guard_duplicate,
            self._guard_ignored,
            self._guard_stale,
            self._guard_failsafe_echo,
        )

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def _policy(self, channel_id: str) -> ChannelPolicy:
        try:
            return channel_policy(await self.store.get_channel(channel_id))
        except Exception as e:
            logger.warning(f"Channel policy lookup failed for {channel_id}, using defaults: {e}")
            return channel_policy(None)

    # --- guards -----------------------------------------------------------

    async def _guard_backlog(self, event: InboundEvent) -> Optional[Classification]:
        if self.backlog.is_backlog(event.channel_id, event.timestamp_seconds):
            return Classification.BACKLOG
        return None

    async def _guard_self_originated(self, event: InboundEvent) -> Optional[Classification]:
        if not event.is_outbound_echo:
            return None

        if self.echo_registry.is_echo(event):
            return Classification.SELF_ECHO

        # Give a concurrently in-flight reply a moment to reach the message log.
        await self._sleep(self.db_echo_delay_seconds)
        if await self._matches_logged_reply(event) or self.echo_registry.is_echo(event):
            return Classification.SELF_ECHO

        if event.message_type in IGNORED_MESSAGE_TYPES:
            return Classification.IGNORED

        sender = bare_participant(event.from_id)
        if sender and sender == bare_participant(event.to_id):
            return Classification.USER_MESSAGE

        if not event.body.strip() and not event.has_media:
            return Classification.IGNORED
        return Classification.ADMIN_MESSAGE

    async def _matches_logged_reply(self, event: InboundEvent) -> bool:
        target = normalize_text(event.body)
        try:
            recent = await self.store.get_recent_messages(event.channel_id, event.to_id, self.db_echo_lookback)
        except Exception as e:
            logger.warning(f"Logged-reply echo check failed: {e}")
            return False
        return any(record.author == Author.AUTOMATION and normalize_text(record.text) == target for record in recent)

    async def _guard_duplicate(self, event: InboundEvent) -> Optional[Classification]:
        if self.recent_ids.seen(event.message_id):
            return Classification.DUPLICATE
        return None

    async def _guard_ignored(self, event: InboundEvent) -> Optional[Classification]:
        if event.from_id == BROADCAST_ID or event.to_id == BROADCAST_ID:
            return Classification.IGNORED
        if event.message_type in IGNORED_MESSAGE_TYPES:
            return Classification.IGNORED
        return None

    async def _guard_stale(self, event: InboundEvent) -> Optional[Classification]:
        if self.backlog.is_stale(event.timestamp_seconds):
            return Classification.BACKLOG
        return None

    async def _guard_failsafe_echo(self, event: InboundEvent) -> Optional[Classification]:
        if normalize_text(event.body) and self.echo_registry.match_text(event.from_id, event.body):
            return Classification.SELF_ECHO
        return None

    async def classify(self, event: InboundEvent) -> Classification:
        for guard in self._guards:
            classification = await guard(event)
            if classification is not None:
                return classification
        return Classification.USER_MESSAGE

    # --- routing ----------------------------------------------------------

    async def handle(self, event: InboundEvent, origin_ts_seconds: Optional[int] = None) -> Optional[Classification]:
        if event.event_kind == EventKind.STATE_CHANGE:
            await self._handle_state_change(event)
            return None
        if event.event_kind == EventKind.LABEL_APPLIED:
            await self._handle_label(event)
            return None
        if event.event_kind == EventKind.LABEL_REMOVED:
            await self._handle_label_removed(event)
            return None

        self.backlog.baseline(event.channel_id, origin_ts_seconds)
        classification = await self.classify(event)

        if classification in (Classification.USER_MESSAGE, Classification.ADMIN_MESSAGE):
            if not await self.recent_ids.claim(event.message_id, event.channel_id):
                classification = Classification.DUPLICATE

        logger.info(
            f"Event classified as {classification.value}",
            extra={
                "context": {
                    "channel_id": event.channel_id,
                    "participant_id": event.participant_id,
                    "message_id": event.message_id,
                    "from_me": event.is_outbound_echo,
                }
            },
        )

        if classification == Classification.ADMIN_MESSAGE:
            await self._handle_admin(event)
        elif classification == Classification.USER_MESSAGE:
            await self._handle_user(event)
        return classification

    async def _handle_admin(self, event: InboundEvent) -> None:
        key = ConversationKey(event.channel_id, event.to_id)
        text = event.body.strip() or "[Media Sent]"
        try:
            await self.store.append_message(
                MessageRecord(
                    channel_id=event.channel_id,
                    sender_id=event.channel_id,
                    recipient_id=event.to_id,
                    message_id=event.message_id,
                    text=text,
                    timestamp_ms=self._now_ms(),
                    author=Author.ADMIN,
                    status="sent",
                )
            )
        except Exception as e:
            logger.error(f"Failed to save admin message: {e}", extra={"context": {"message_id": event.message_id}})

        try:
            policy = await self._policy(event.channel_id)
            command = detect_handover_command(text, policy.lock_emojis, policy.unlock_emojis)
            if command is None:
                await self.lock.lock(key, settings.admin_handover_ttl_seconds, LockSource.ADMIN_REPLY)
            elif command.action == "lock":
                await self.lock.lock(key, settings.emoji_lock_ttl_seconds, LockSource.EMOJI)
            else:
                await self.lock.unlock(key)
        except Exception as e:
            logger.error(f"Admin handover update failed for {key}: {e}", exc_info=True)

    async def _handle_user(self, event: InboundEvent) -> None:
        key = event.key
        now_ms = self._now_ms()
        try:
            await self.store.append_message(
                MessageRecord(
                    channel_id=event.channel_id,
                    sender_id=event.from_id,
                    recipient_id=event.to_id or event.channel_id,
                    message_id=event.message_id,
                    text=event.body or media_placeholder(event),
                    timestamp_ms=now_ms,
                    author=Author.USER,
                    is_group=event.is_group,
                )
            )
            await self.store.touch_contact(key, event.push_name)
        except Exception as e:
            logger.error(f"Failed to save user message: {e}", extra={"context": {"message_id": event.message_id}})

        await self.debounce.enqueue(key, PendingMessage.from_event(event, now_ms))

    async def _handle_state_change(self, event: InboundEvent) -> None:
        status, active = map_session_status(event.status)
        try:
            await self.store.update_channel_status(event.channel_id, status, active)
            logger.info(
                f"Channel {event.channel_id} status -> {status}",
                extra={"context": {"channel_id": event.channel_id, "status": status, "active": active}},
            )
        except Exception as e:
            logger.error(f"Failed to update status for {event.channel_id}: {e}")

    async def _handle_label(self, event: InboundEvent) -> None:
        key = event.key
        try:
            policy = await self._policy(event.channel_id)
            if not policy.label_blocks_on_event(event.label_name):
                logger.info(f"Non-blocking label '{event.label_name}' on {key}")
                return

            await self.lock.lock(key, settings.label_lock_ttl_seconds, LockSource.LABEL)
            await self._notice(key, f"[SYSTEM] Admin applied label '{event.label_name}'. AI paused.")
        except Exception as e:
            logger.error(f"Label event handling failed for {key}: {e}", exc_info=True)

    async def _handle_label_removed(self, event: InboundEvent) -> None:
        key = event.key
        try:
            policy = await self._policy(event.channel_id)
            if not policy.labels_block_turn([event.label_name or ""]):
                return
            if await self.lock.release_label(key):
                await self._notice(key, f"[SYSTEM] Admin removed label '{event.label_name}'. AI resumed.")
        except Exception as e:
            logger.error(f"Label removal handling failed for {key}: {e}", exc_info=True)

    async def _notice(self, key: ConversationKey, text: str) -> None:
        now_ms = self._now_ms()
        await self.store.append_message(
            MessageRecord(
                channel_id=key.channel_id,
                sender_id=key.channel_id,
                recipient_id=key.participant_id,
                message_id=synthetic_message_id("label", key.participant_id, now_ms),
                text=text,
                timestamp_ms=now_ms,
                author=Author.SYSTEM,
                status="system_notice",
            )
        )

"""Registry of messages this process just sent.

A send is recorded before the gateway call goes out, because the platform can
echo it back as an inbound event before ``send_text`` returns.
"""

import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional

from autopilot.config import settings
from autopilot.domain import InboundEvent, bare_participant
from autopilot.logging_config import get_logger
from autopilot.services.text import normalize_text, texts_match

logger = get_logger("echo_registry")


@dataclass(frozen=True)
class EchoRecord:
    recipient_id: str
    normalized_text: str
    sent_at_ms: int
    message_id: Optional[str] = None


class EchoRegistry:
    def __init__(
        self,
        text_window_seconds: float = settings.echo_text_window_seconds,
        id_window_seconds: float = settings.echo_id_window_seconds,
        clock: Callable[[], float] = time.time,
    ):
        self.text_window_ms = int(text_window_seconds * 1000)
        self.id_window_ms = int(id_window_seconds * 1000)
        self._clock = clock
        self._texts: dict[str, deque[EchoRecord]] = {}
        self._ids: dict[str, int] = {}

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def record(self, recipient_id: str, text: Optional[str], message_id: Optional[str] = None) -> EchoRecord:
        """Remember an outgoing text (and its id, when already known)."""
        now_ms = self._now_ms()
        entry = EchoRecord(
            recipient_id=bare_participant(recipient_id),
            normalized_text=normalize_text(text),
            sent_at_ms=now_ms,
            message_id=message_id,
        )
        self._texts.setdefault(entry.recipient_id, deque()).append(entry)
        if message_id:
            self._ids[message_id] = now_ms
        return entry

    def record_message_id(self, message_id: Optional[str]) -> None:
        """Attach the id the gateway returned once the send completed."""
        if message_id:
            self._ids[message_id] = self._now_ms()

    def match_message_id(self, message_id: Optional[str]) -> bool:
        if not message_id:
            return False
        sent_at = self._ids.get(message_id)
        if sent_at is None:
            return False
        if self._now_ms() - sent_at >= self.id_window_ms:
            del self._ids[message_id]
            return False
        return True

    def match_text(self, recipient_id: str, text: Optional[str], window_ms: Optional[int] = None) -> bool:
        """Normalized-text match against recent sends to ``recipient_id``."""
        window = self.text_window_ms if window_ms is None else window_ms
        entries = self._texts.get(bare_participant(recipient_id))
        if not entries:
            return False
        candidate = normalize_text(text)
        now_ms = self._now_ms()
        for entry in reversed(entries):
            if now_ms - entry.sent_at_ms >= window:
                continue
            if not candidate and not entry.normalized_text:
                return True
            if texts_match(candidate, entry.normalized_text):
                return True
        return False

    def is_echo(self, event: InboundEvent) -> bool:
        if self.match_message_id(event.message_id):
            return True
        recipient = event.to_id if event.is_outbound_echo else event.from_id
        return self.match_text(recipient or event.from_id, event.body)

    def prune(self) -> int:
        """Drop expired entries. Returns how many were removed."""
        now_ms = self._now_ms()
        removed = 0
        for recipient in list(self._texts):
            entries = self._texts[recipient]
            while entries and now_ms - entries[0].sent_at_ms >= self.text_window_ms:
                entries.popleft()
                removed += 1
            if not entries:
                del self._texts[recipient]
        for message_id, sent_at in list(self._ids.items()):
            if now_ms - sent_at >= self.id_window_ms:
                del self._ids[message_id]
                removed += 1
        if removed:
            logger.debug(f"Pruned {removed} echo entries")
        return removed

    def __len__(self) -> int:
        return sum(len(entries) for entries in self._texts.values()) + len(self._ids)

"""Per-conversation handover lock.

Two tiers: a short-lived in-memory cache and the durable record in the store.
The durable record is authoritative. Every decision falls back to it when the
cache entry is missing or older than ``cache_ttl_seconds``, and refreshes the
cache from what it read.

Precedence when triggers conflict:

* a lock never shortens an existing lock; the later expiry wins and keeps its source
* an explicit unlock clears every source
* ``release_label`` only clears locks whose source is a label
* history evidence only overrides the durable record when it is newer
"""

import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from autopilot.config import settings
from autopilot.domain import Author, ConversationKey, LockSource, LockState
from autopilot.logging_config import get_logger
from autopilot.services.store.base import ConversationStore
from autopilot.services.text import detect_handover_command

logger = get_logger("conversation_lock")

_HISTORY_AUTHORS = (Author.ADMIN, Author.SYSTEM, Author.AUTOMATION)


@dataclass
class _CacheEntry:
    state: LockState
    cached_at_ms: int


class ConversationLock:
    def __init__(
        self,
        store: ConversationStore,
        cache_ttl_seconds: float = settings.lock_cache_ttl_seconds,
        emoji_lock_ttl_seconds: int = settings.emoji_lock_ttl_seconds,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.cache_ttl_ms = int(cache_ttl_seconds * 1000)
        self.emoji_lock_ttl_ms = emoji_lock_ttl_seconds * 1000
        self._clock = clock
        self._cache: dict[ConversationKey, _CacheEntry] = {}

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _cache_put(self, state: LockState) -> None:
        self._cache[state.conversation_key] = _CacheEntry(state=state, cached_at_ms=self._now_ms())

    def _cache_get(self, key: ConversationKey) -> Optional[LockState]:
        entry = self._cache.get(key)
        if entry is None:
            return None
        if self._now_ms() - entry.cached_at_ms >= self.cache_ttl_ms:
            del self._cache[key]
            return None
        return entry.state

    async def get_state(self, key: ConversationKey) -> LockState:
        """Cache if fresh, else the durable record (repopulating the cache), else unlocked."""
        cached = self._cache_get(key)
        if cached is not None:
            return cached
        durable = await self.store.get_lock_state(key)
        state = durable or LockState.unlocked(key)
        # Another task may have written while we were reading; keep the newer.
        current = self._cache_get(key)
        if current is not None and current.updated_at_ms > state.updated_at_ms:
            return current
        self._cache_put(state)
        return state

    async def is_locked(self, key: ConversationKey) -> bool:
        state = await self.get_state(key)
        return state.is_active(self._now_ms())

    async def _write(self, state: LockState, context: dict) -> bool:
        self._cache_put(state)
        try:
            await self.store.set_lock_state(state)
            return True
        except Exception as e:
            if not state.is_active(self._now_ms()):
                # A stale cached lock would be wrong either way; force a re-read.
                self._cache.pop(state.conversation_key, None)
            logger.error(f"Durable lock write failed: {e}", extra={"context": context}, exc_info=True)
            return False

    async def lock(self, key: ConversationKey, ttl_seconds: float, source: LockSource) -> LockState:
        now_ms = self._now_ms()
        until_ms = now_ms + int(ttl_seconds * 1000)
        current = await self.get_state(key)

        if current.is_active(now_ms) and current.locked_until_ms >= until_ms:
            new_state = LockState(key, current.locked_until_ms, current.source, now_ms)
        else:
            new_state = LockState(key, until_ms, source, now_ms)

        await self._write(
            new_state,
            {
                "channel_id": key.channel_id,
                "participant_id": key.participant_id,
                "source": new_state.source.value if new_state.source else None,
                "locked_until_ms": new_state.locked_until_ms,
            },
        )
        logger.info(
            f"Conversation locked ({source.value})",
            extra={
                "context": {
                    "channel_id": key.channel_id,
                    "participant_id": key.participant_id,
                    "ttl_seconds": ttl_seconds,
                    "effective_source": new_state.source.value if new_state.source else None,
                }
            },
        )
        return new_state

    async def unlock(self, key: ConversationKey, only_source: Optional[Iterable[LockSource]] = None) -> bool:
        """Clear the lock. With ``only_source``, only when the current lock came from one of them."""
        if only_source is not None:
            current = await self.get_state(key)
            if not current.is_active(self._now_ms()) or current.source not in set(only_source):
                return False

        new_state = LockState.unlocked(key, updated_at_ms=self._now_ms())
        await self._write(new_state, {"channel_id": key.channel_id, "participant_id": key.participant_id})
        logger.info(
            "Conversation unlocked",
            extra={"context": {"channel_id": key.channel_id, "participant_id": key.participant_id}},
        )
        return True

    async def release_label(self, key: ConversationKey) -> bool:
        return await self.unlock(key, only_source=(LockSource.LABEL,))

    async def reconcile_from_history(
        self,
        key: ConversationKey,
        lock_emojis: Iterable[str],
        unlock_emojis: Iterable[str],
        scan_limit: int = settings.history_scan_default,
    ) -> Optional[str]:
        """Repair lock drift from the latest lock/unlock emoji in recent history.

        Returns the action applied ("lock" / "unlock") or None when the durable
        record already reflects the latest evidence.
        """
        lock_emojis = list(lock_emojis)
        unlock_emojis = list(unlock_emojis)
        try:
            history = await self.store.get_recent_messages(key.channel_id, key.participant_id, scan_limit)
        except Exception as e:
            logger.warning(
                f"History scan failed: {e}",
                extra={"context": {"channel_id": key.channel_id, "participant_id": key.participant_id}},
            )
            return None

        for record in history:
            if record.author not in _HISTORY_AUTHORS:
                continue
            command = detect_handover_command(record.text, lock_emojis, unlock_emojis)
            if command is None:
                continue
            return await self._apply_history_command(key, command.action, record.timestamp_ms)
        return None

    async def _apply_history_command(self, key: ConversationKey, action: str, at_ms: int) -> Optional[str]:
        durable = await self.store.get_lock_state(key)
        if durable is not None and durable.updated_at_ms >= at_ms:
            return None

        now_ms = self._now_ms()
        if action == "lock":
            until_ms = at_ms + self.emoji_lock_ttl_ms
            if until_ms <= now_ms:
                return None
            if durable is not None and durable.is_active(now_ms) and (durable.locked_until_ms or 0) >= until_ms:
                return None
            state = LockState(key, until_ms, LockSource.EMOJI, at_ms)
        else:
            if durable is None or not durable.is_active(now_ms):
                return None
            state = LockState.unlocked(key, updated_at_ms=at_ms)

        await self._write(state, {"channel_id": key.channel_id, "participant_id": key.participant_id})
        logger.info(
            f"Lock state repaired from history ({action})",
            extra={"context": {"channel_id": key.channel_id, "participant_id": key.participant_id}},
        )
        return action

    async def resolve(
        self,
        key: ConversationKey,
        lock_emojis: Iterable[str] = (),
        unlock_emojis: Iterable[str] = (),
        scan_limit: Optional[int] = None,
    ) -> LockState:
        """Full authorization read: history repair first, then cache/durable."""
        if scan_limit:
            await self.reconcile_from_history(key, lock_emojis, unlock_emojis, scan_limit)
        return await self.get_state(key)

    def prune_cache(self) -> int:
        now_ms = self._now_ms()
        expired = [key for key, entry in self._cache.items() if now_ms - entry.cached_at_ms >= self.cache_ttl_ms]
        for key in expired:
            del self._cache[key]
        return len(expired)

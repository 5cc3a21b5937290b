"""Recent message-id window used to drop gateway redeliveries."""

import time
from typing import Callable, Optional

import redis.asyncio as redis_async

from autopilot.config import settings
from autopilot.logging_config import get_logger
from autopilot.services.alert_service import alert_warning

logger = get_logger("dedup")

_redis_client = None
_redis_url: Optional[str] = None


def get_dedup_redis(redis_url: Optional[str] = None, socket_timeout_seconds: float = 1.0):
    """Shared redis client for cross-process dedup, or None when not configured."""
    global _redis_client, _redis_url

    redis_url = redis_url or settings.redis_url
    if not redis_url:
        return None

    if _redis_client is None or _redis_url != redis_url:
        _redis_url = redis_url
        _redis_client = redis_async.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=socket_timeout_seconds,
            socket_timeout=socket_timeout_seconds,
        )

    return _redis_client


class RecentMessageIds:
    def __init__(
        self,
        window_seconds: int = settings.duplicate_window_seconds,
        redis_client=None,
        clock: Callable[[], float] = time.time,
    ):
        self.window_seconds = window_seconds
        self._redis = redis_client
        self._clock = clock
        self._seen: dict[str, float] = {}

    def seen(self, message_id: Optional[str]) -> bool:
        """True if ``message_id`` was claimed within the window. Does not mark."""
        if not message_id:
            return False
        marked_at = self._seen.get(message_id)
        if marked_at is None:
            return False
        if self._clock() - marked_at >= self.window_seconds:
            del self._seen[message_id]
            return False
        return True

    def mark(self, message_id: Optional[str]) -> bool:
        """Claim ``message_id`` in this process. False if it was already claimed."""
        if not message_id:
            return True
        if self.seen(message_id):
            return False
        self._seen[message_id] = self._clock()
        return True

    async def claim(self, message_id: Optional[str], channel_id: str = "") -> bool:
        """Claim locally, then across processes when redis is configured."""
        if not self.mark(message_id):
            return False
        if not message_id or self._redis is None:
            return True

        key = f"autopilot:dedup:{channel_id}:{message_id}"
        try:
            was_set = await self._redis.set(key, "1", ex=self.window_seconds, nx=True)
            if not was_set:
                logger.info(
                    "Duplicate message_id (redis)",
                    extra={"context": {"channel_id": channel_id, "message_id": message_id}},
                )
                return False
        except Exception as e:
            logger.warning(f"Dedup redis unavailable, using in-memory window only: {e}")
            await alert_warning("Dedup redis unavailable", {"channel": channel_id, "error": str(e)})
        return True

    def prune(self) -> int:
        now = self._clock()
        expired = [mid for mid, marked_at in self._seen.items() if now - marked_at >= self.window_seconds]
        for message_id in expired:
            del self._seen[message_id]
        return len(expired)

    def __len__(self) -> int:
        return len(self._seen)

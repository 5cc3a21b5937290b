"""Per-conversation debounce of rapid-fire user messages.

Each conversation has at most one open buffer. Every enqueue appends to it and
restarts its timer. When the timer fires the buffer is detached from the map
before the batch is handed off, so messages arriving during processing start
a fresh buffer instead of joining a batch that is already being answered.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from autopilot.config import settings
from autopilot.domain import ConversationKey, PendingMessage
from autopilot.logging_config import get_logger

logger = get_logger("debounce")

ReleaseHandler = Callable[[ConversationKey, list[PendingMessage]], Awaitable[None]]
WaitResolver = Callable[[str], Awaitable[Optional[float]]]


@dataclass(eq=False)
class ConversationBuffer:
    key: ConversationKey
    messages: list[PendingMessage] = field(default_factory=list)
    timer: Optional[asyncio.Task] = None
    released: bool = False


def clamp_wait(
    wait_seconds: Optional[float],
    default_seconds: float = settings.debounce_default_seconds,
    min_seconds: float = settings.debounce_min_seconds,
) -> float:
    if wait_seconds is None:
        return max(default_seconds, min_seconds)
    try:
        value = float(wait_seconds)
    except (TypeError, ValueError):
        return max(default_seconds, min_seconds)
    return max(value, min_seconds)


class DebounceAggregator:
    def __init__(
        self,
        on_release: ReleaseHandler,
        wait_resolver: Optional[WaitResolver] = None,
        default_wait_seconds: float = settings.debounce_default_seconds,
        min_wait_seconds: float = settings.debounce_min_seconds,
        sleep_func=asyncio.sleep,
    ):
        self._on_release = on_release
        self._wait_resolver = wait_resolver
        self.default_wait_seconds = default_wait_seconds
        self.min_wait_seconds = min_wait_seconds
        self._sleep = sleep_func
        self._buffers: dict[ConversationKey, ConversationBuffer] = {}
        self._inflight: set[asyncio.Task] = set()

    async def _resolve_wait(self, channel_id: str) -> float:
        configured = None
        if self._wait_resolver is not None:
            try:
                configured = await self._wait_resolver(channel_id)
            except Exception as e:
                logger.warning(f"Debounce wait lookup failed for {channel_id}: {e}")
        return clamp_wait(configured, self.default_wait_seconds, self.min_wait_seconds)

    async def enqueue(self, key: ConversationKey, message: PendingMessage) -> None:
        buffer = self._buffers.get(key)
        if buffer is None:
            buffer = ConversationBuffer(key=key)
            self._buffers[key] = buffer
        buffer.messages.append(message)

        wait_seconds = await self._resolve_wait(key.channel_id)

        # Released while we looked up the wait time: the message went out with it.
        if self._buffers.get(key) is not buffer:
            return

        if buffer.timer is not None and not buffer.timer.done():
            buffer.timer.cancel()
        buffer.timer = asyncio.create_task(self._fire(buffer, wait_seconds))
        self._inflight.add(buffer.timer)
        buffer.timer.add_done_callback(self._inflight.discard)

        logger.debug(
            f"Buffered message for {key}",
            extra={"context": {"pending": len(buffer.messages), "wait_seconds": wait_seconds}},
        )

    async def _fire(self, buffer: ConversationBuffer, wait_seconds: float) -> None:
        await self._sleep(wait_seconds)

        if buffer.released or self._buffers.get(buffer.key) is not buffer:
            return
        del self._buffers[buffer.key]
        buffer.released = True
        batch = list(buffer.messages)

        logger.info(
            f"Releasing {len(batch)} buffered message(s)",
            extra={
                "context": {
                    "channel_id": buffer.key.channel_id,
                    "participant_id": buffer.key.participant_id,
                }
            },
        )
        try:
            await self._on_release(buffer.key, batch)
        except Exception as e:
            logger.error(f"Release handler failed for {buffer.key}: {e}", exc_info=True)

    def pending(self, key: ConversationKey) -> list[PendingMessage]:
        buffer = self._buffers.get(key)
        return list(buffer.messages) if buffer else []

    def __len__(self) -> int:
        return len(self._buffers)

    async def drain(self) -> None:
        """Wait for every scheduled release, including ones scheduled meanwhile."""
        while True:
            pending = [task for task in self._inflight if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def shutdown(self) -> None:
        for buffer in list(self._buffers.values()):
            if buffer.timer is not None and not buffer.timer.done():
                buffer.timer.cancel()
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
        self._buffers.clear()

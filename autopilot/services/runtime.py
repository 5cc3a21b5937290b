"""Owns every piece of process-local state and wires the pipeline together.

Nothing here is module-level: the echo registry, lock cache, dedup window,
backlog baselines and debounce buffers all live on one AutopilotRuntime,
created at startup and reached by the router through ``app.state``.
"""

import asyncio
import time
from typing import Callable, Optional

from autopilot.config import settings
from autopilot.database import SessionLocal
from autopilot.logging_config import get_logger
from autopilot.services.backlog_filter import BacklogFilter
from autopilot.services.conversation_lock import ConversationLock
from autopilot.services.debounce import DebounceAggregator
from autopilot.services.dedup import RecentMessageIds, get_dedup_redis
from autopilot.services.echo_registry import EchoRegistry
from autopilot.services.event_classifier import Classification, EventClassifier
from autopilot.services.gateway.base import MessagingGateway
from autopilot.services.gateway.waha import WahaGateway
from autopilot.services.inbound import MalformedEventError, parse_event
from autopilot.services.llm.base import ResponseGenerator
from autopilot.services.llm.openai_generator import OpenAIResponseGenerator
from autopilot.services.store.base import ConversationStore
from autopilot.services.store.sql_store import SqlConversationStore
from autopilot.services.turn_processor import TurnProcessor

logger = get_logger("runtime")


class AutopilotRuntime:
    def __init__(
        self,
        store: ConversationStore,
        gateway: MessagingGateway,
        generator: ResponseGenerator,
        *,
        redis_client=None,
        clock: Callable[[], float] = time.time,
        sleep_func=asyncio.sleep,
    ):
        self.store = store
        self.gateway = gateway
        self.generator = generator

        self.echo_registry = EchoRegistry(clock=clock)
        self.lock = ConversationLock(store, clock=clock)
        self.backlog = BacklogFilter(clock=clock)
        self.recent_ids = RecentMessageIds(redis_client=redis_client, clock=clock)
        self.turn_processor = TurnProcessor(
            store=store,
            gateway=gateway,
            generator=generator,
            lock=self.lock,
            echo_registry=self.echo_registry,
            clock=clock,
            sleep_func=sleep_func,
        )
        self.debounce = DebounceAggregator(
            on_release=self.turn_processor.process,
            wait_resolver=self._channel_wait_seconds,
            sleep_func=sleep_func,
        )
        self.classifier = EventClassifier(
            store=store,
            echo_registry=self.echo_registry,
            lock=self.lock,
            backlog=self.backlog,
            recent_ids=self.recent_ids,
            debounce=self.debounce,
            clock=clock,
            sleep_func=sleep_func,
        )
        self._known_channels: set[str] = set()

    @classmethod
    def from_settings(cls) -> "AutopilotRuntime":
        return cls(
            SqlConversationStore(SessionLocal),
            WahaGateway(),
            OpenAIResponseGenerator(),
            redis_client=get_dedup_redis(settings.redis_url),
        )

    async def _channel_wait_seconds(self, channel_id: str) -> Optional[float]:
        channel = await self.store.get_channel(channel_id)
        return channel.wait_time_seconds if channel else None

    async def ensure_channel(self, channel_id: str) -> None:
        """Register channels the gateway knows about but the store does not."""
        if channel_id in self._known_channels:
            return
        try:
            if await self.store.get_channel(channel_id) is None:
                await self.store.register_channel(channel_id, status="connected")
                logger.info(f"Channel '{channel_id}' auto-registered", extra={"context": {"channel_id": channel_id}})
            self._known_channels.add(channel_id)
        except Exception as e:
            logger.error(f"Channel auto-registration failed for {channel_id}: {e}")

    async def handle_payload(self, envelope: dict, origin_ts_ms: Optional[int] = None) -> Optional[Classification]:
        try:
            event = parse_event(envelope)
        except MalformedEventError as e:
            logger.warning(f"Dropping malformed webhook event: {e}")
            return None
        if event is None:
            logger.debug(f"Ignoring webhook event '{envelope.get('event')}'")
            return None

        await self.ensure_channel(event.channel_id)
        origin_seconds = int(origin_ts_ms) // 1000 if origin_ts_ms else None
        try:
            return await self.classifier.handle(event, origin_seconds)
        except Exception as e:
            logger.error(
                f"Event handling failed: {e}",
                extra={"context": {"channel_id": event.channel_id, "message_id": event.message_id}},
                exc_info=True,
            )
            return None

    def sweep(self) -> dict:
        removed = {
            "echo": self.echo_registry.prune(),
            "lock_cache": self.lock.prune_cache(),
            "message_ids": self.recent_ids.prune(),
        }
        if any(removed.values()):
            logger.info("Swept expired in-memory state", extra={"context": removed})
        return removed

    async def run_sweeper(self, interval_seconds: float = settings.sweep_interval_seconds, sleep_func=asyncio.sleep) -> None:
        while True:
            await sleep_func(interval_seconds)
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Sweep failed: {e}", exc_info=True)

    async def shutdown(self) -> None:
        await self.debounce.shutdown()

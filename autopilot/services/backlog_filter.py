import time
from typing import Callable, Optional

from autopilot.config import settings
from autopilot.logging_config import get_logger

logger = get_logger("backlog_filter")


class BacklogFilter:
    """Rejects events that predate the moment a channel started being processed.

    The baseline for a channel is fixed by the first event seen for it: the
    gateway-supplied origin timestamp when there is one, wall-clock now otherwise.
    """

    def __init__(
        self,
        tolerance_seconds: int = settings.backlog_tolerance_seconds,
        max_age_seconds: int = settings.max_event_age_seconds,
        clock: Callable[[], float] = time.time,
    ):
        self.tolerance_seconds = tolerance_seconds
        self.max_age_seconds = max_age_seconds
        self._clock = clock
        self._baselines: dict[str, int] = {}

    def baseline(self, channel_id: str, origin_ts_seconds: Optional[int] = None) -> int:
        if channel_id not in self._baselines:
            start = int(origin_ts_seconds) if origin_ts_seconds else int(self._clock())
            self._baselines[channel_id] = start
            logger.info(
                f"Channel {channel_id} baseline set",
                extra={"context": {"channel_id": channel_id, "baseline": start}},
            )
        return self._baselines[channel_id]

    def is_backlog(self, channel_id: str, timestamp_seconds: Optional[int]) -> bool:
        baseline = self.baseline(channel_id)
        msg_ts = timestamp_seconds or int(self._clock())
        return msg_ts < baseline - self.tolerance_seconds

    def is_stale(self, timestamp_seconds: Optional[int]) -> bool:
        if not timestamp_seconds:
            return False
        return int(self._clock()) - timestamp_seconds > self.max_age_seconds

    def reset(self, channel_id: str) -> None:
        self._baselines.pop(channel_id, None)

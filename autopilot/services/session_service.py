"""Channel session policy: status mapping, per-channel settings and the reply gate."""

from dataclasses import dataclass
from typing import Iterable, Optional

from autopilot.config import settings
from autopilot.domain import ChannelRecord
from autopilot.services.result import Result
from autopilot.services.text import (
    DEFAULT_BLOCKING_LABELS,
    DEFAULT_LOCK_EMOJIS,
    DEFAULT_TURN_BLOCKING_LABELS,
    DEFAULT_UNLOCK_EMOJIS,
    is_blocking_label,
    normalize_label,
    parse_emoji_list,
    parse_label_list,
)

VALID_SUBSCRIPTION_STATUSES = {"active", "trial", "active_trial", "active_paid"}

# gateway status -> (stored status, active)
_STATUS_MAP = {
    "WORKING": ("WORKING", True),
    "CONNECTED": ("WORKING", True),
    "STOPPED": ("STOPPED", False),
    "SCAN_QR_CODE": ("scanned", False),
    "SCAN_QR": ("scanned", False),
    "STARTING": ("STARTING", False),
}


def map_session_status(status: Optional[str]) -> tuple[str, Optional[bool]]:
    """Map a gateway connectivity status. Unknown statuses keep ``active`` untouched."""
    if not status:
        return "unknown", False
    if status in _STATUS_MAP:
        return _STATUS_MAP[status]
    return status, None


@dataclass
class ChannelPolicy:
    wait_seconds: Optional[float]
    lock_emojis: list[str]
    unlock_emojis: list[str]
    history_scan: int
    event_blocking_labels: list[str]
    turn_blocking_labels: list[str]
    history_limit: int
    group_reply: bool

    def label_blocks_on_event(self, name: Optional[str]) -> bool:
        return is_blocking_label(name, self.event_blocking_labels)

    def labels_block_turn(self, names: Iterable[str]) -> bool:
        return any(
            normalize_label(name) in self.turn_blocking_labels or self.label_blocks_on_event(name) for name in names
        )

    def label_blocks_on_directive(self, name: str) -> bool:
        return normalize_label(name) in self.turn_blocking_labels


def channel_policy(channel: Optional[ChannelRecord]) -> ChannelPolicy:
    if channel is None:
        channel = ChannelRecord(channel_id="")

    history_limit = settings.history_limit_default
    if channel.history_limit and 0 < channel.history_limit <= 50:
        history_limit = channel.history_limit

    configured_labels = parse_label_list(channel.blocking_labels, ())
    return ChannelPolicy(
        wait_seconds=channel.wait_time_seconds,
        lock_emojis=parse_emoji_list(channel.block_emoji, channel.lock_emojis, default=DEFAULT_LOCK_EMOJIS),
        unlock_emojis=parse_emoji_list(channel.unblock_emoji, channel.unlock_emojis, default=DEFAULT_UNLOCK_EMOJIS),
        history_scan=channel.emoji_check_count or settings.history_scan_default,
        event_blocking_labels=list(DEFAULT_BLOCKING_LABELS) + configured_labels,
        turn_blocking_labels=list(DEFAULT_TURN_BLOCKING_LABELS) + configured_labels,
        history_limit=history_limit,
        group_reply=channel.group_reply,
    )


def authorize_channel(channel: Optional[ChannelRecord]) -> Result[ChannelRecord]:
    """Is this channel allowed to spend an automated reply right now."""
    if channel is None:
        return Result.failure("Session not configured.", "not_configured")

    if channel.subscription_status not in VALID_SUBSCRIPTION_STATUSES:
        return Result.failure(
            f"Inactive Subscription: {channel.subscription_status}.",
            "inactive_subscription",
        )

    if not channel.uses_own_key and (channel.message_credit or 0) <= 0:
        return Result.failure("Out of Credits.", "no_credit")

    return Result.success(channel)

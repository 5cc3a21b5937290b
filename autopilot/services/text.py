"""Text normalization and handover-command detection.

Normalized text is what echo matching and emoji scanning compare against:
lowercase, no whitespace, no punctuation. Symbols (emoji included) survive so
that a bare "🔒" still means something after normalization.
"""

import re
import unicodedata
from dataclasses import dataclass
from typing import Iterable, Optional

DEFAULT_LOCK_EMOJIS = ("🛑", "🔒", "⛔")
DEFAULT_UNLOCK_EMOJIS = ("🟢", "🔓", "✅")

# Labels that hand the chat to a human when applied from the phone.
DEFAULT_BLOCKING_LABELS = ("adminhandle", "admincall", "stop", "human", "manual")
# Labels checked before every automated turn.
DEFAULT_TURN_BLOCKING_LABELS = ("adminhandle", "admincall", "ordertrack")

VARIATION_SELECTOR = "️"

_LIST_SPLIT_RE = re.compile(r"[,\s]+")
_LABEL_CLEAN_RE = re.compile(r"[^a-z0-9]")


def normalize_text(text: Optional[str]) -> str:
    if not text:
        return ""
    lowered = text.lower()
    return "".join(ch for ch in lowered if not ch.isspace() and not unicodedata.category(ch).startswith("P"))


def normalize_emoji(value: Optional[str]) -> str:
    if not value:
        return ""
    return unicodedata.normalize("NFC", value.replace(VARIATION_SELECTOR, "").strip())


def parse_emoji_list(*sources: Optional[str], default: Iterable[str] = ()) -> list[str]:
    """Merge single-emoji and comma/space separated list settings.

    Falls back to ``default`` when every source is empty.
    """
    emojis: list[str] = []
    for source in sources:
        if not source:
            continue
        for part in _LIST_SPLIT_RE.split(source):
            emoji = normalize_emoji(part)
            if emoji and emoji not in emojis:
                emojis.append(emoji)
    if not emojis:
        emojis = [normalize_emoji(e) for e in default]
    return emojis


@dataclass(frozen=True)
class HandoverCommand:
    action: str  # "lock" or "unlock"
    emoji: str


def detect_handover_command(
    text: Optional[str],
    lock_emojis: Iterable[str],
    unlock_emojis: Iterable[str],
) -> Optional[HandoverCommand]:
    """Find a lock or unlock emoji in ``text``. Lock wins when both appear."""
    cleaned = normalize_emoji(text)
    if not cleaned:
        return None
    for emoji in lock_emojis:
        if emoji and emoji in cleaned:
            return HandoverCommand("lock", emoji)
    for emoji in unlock_emojis:
        if emoji and emoji in cleaned:
            return HandoverCommand("unlock", emoji)
    return None


def normalize_label(name: Optional[str]) -> str:
    return _LABEL_CLEAN_RE.sub("", (name or "").lower())


def parse_label_list(raw: Optional[str], default: Iterable[str]) -> list[str]:
    if not raw:
        return [normalize_label(label) for label in default]
    labels = [normalize_label(part) for part in _LIST_SPLIT_RE.split(raw)]
    return [label for label in labels if label]


def is_blocking_label(name: Optional[str], blocking: Iterable[str]) -> bool:
    normalized = normalize_label(name)
    if not normalized:
        return False
    return any(token and token in normalized for token in blocking)


def texts_match(candidate: str, recorded: str) -> bool:
    """Exact match, or containment either way once the text is long enough."""
    if not candidate or not recorded:
        return False
    if candidate == recorded:
        return True
    if len(candidate) > 5 and recorded in candidate:
        return True
    return len(recorded) > 5 and candidate in recorded

"""Control directives the agent embeds in its reply for this system, not the user."""

import json
import re
from dataclasses import dataclass, field
from typing import Iterable, Optional

from autopilot.logging_config import get_logger
from autopilot.services.llm.base import OutboundMedia

logger = get_logger("directives")

SAVE_ORDER_RE = re.compile(r"\[SAVE_ORDER:\s*({.*?})\]", re.DOTALL)
ADD_LABEL_RE = re.compile(r"\[ADD_LABEL:\s*([a-zA-Z0-9_]+)\]", re.IGNORECASE)
IMAGE_RE = re.compile(r"IMAGE:\s*(.+?)\s*\|\s*(https?://[^\s,]+)", re.IGNORECASE)
IMAGE_EXTENSION_RE = re.compile(r"\.(jpg|jpeg|png|gif|webp|bmp|tiff)(\?.*)?$", re.IGNORECASE)
DRIVE_FILE_RE = re.compile(r"/file/d/([a-zA-Z0-9_-]+)")

ORDER_LABEL = "ordertrack"


@dataclass
class ReplyDirectives:
    text: str
    order: Optional[dict] = None
    labels: list[str] = field(default_factory=list)
    media: list[OutboundMedia] = field(default_factory=list)


def normalize_media_url(url: str) -> str:
    url = url.rstrip(",.")
    drive = DRIVE_FILE_RE.search(url)
    if drive and "drive.google.com" in url:
        return f"https://drive.google.com/uc?export=view&id={drive.group(1)}"
    return url


def _is_sendable_image(url: str) -> bool:
    return bool(IMAGE_EXTENSION_RE.search(url)) or "drive.google.com" in url


def _clean(text: str) -> str:
    return re.sub(r"\n{3,}", "\n\n", text).strip()


def extract_directives(text: str, structured_media: Iterable[OutboundMedia] = ()) -> ReplyDirectives:
    """Pull order, label and image directives out of a reply and return the cleaned text."""
    result = ReplyDirectives(text=text or "")
    media: list[OutboundMedia] = list(structured_media)

    order_match = SAVE_ORDER_RE.search(result.text)
    if order_match:
        try:
            result.order = json.loads(order_match.group(1))
        except json.JSONDecodeError as e:
            logger.warning(f"Unparseable SAVE_ORDER payload: {e}")
        result.text = result.text.replace(order_match.group(0), "")

    for label_match in ADD_LABEL_RE.finditer(result.text):
        label = label_match.group(1).lower()
        if label not in result.labels:
            result.labels.append(label)
    result.text = ADD_LABEL_RE.sub("", result.text)

    for image_match in IMAGE_RE.finditer(result.text):
        title = image_match.group(1).strip()
        url = image_match.group(2).strip().rstrip(",.")
        if not _is_sendable_image(url):
            continue
        if not any(existing.url == url for existing in media):
            media.append(OutboundMedia(url=url, title=title))
        result.text = result.text.replace(image_match.group(0), "")

    seen_urls: set[str] = set()
    for item in media:
        url = normalize_media_url(item.url)
        if url not in seen_urls:
            seen_urls.add(url)
            result.media.append(OutboundMedia(url=url, title=item.title))

    result.text = _clean(result.text)
    return result

"""Gateway webhook envelope -> InboundEvent."""

from typing import Any, Optional

from autopilot.domain import EventKind, InboundEvent, MediaRef

MESSAGE_EVENTS = {"message", "message.any"}
STATE_EVENTS = {"state.change", "session.status"}
# Chat-level label events only; label.upsert and label.deleted edit the label catalogue.
LABEL_EVENTS = {
    "label.chat.added": EventKind.LABEL_APPLIED,
    "labelapplied": EventKind.LABEL_APPLIED,
    "label.chat.deleted": EventKind.LABEL_REMOVED,
}


class MalformedEventError(ValueError):
    """Webhook payload is missing fields the core needs."""


def normalize_message_id(raw: Any) -> str:
    """Gateways deliver ids as strings or as ``{"_serialized": ..., "id": ...}`` objects."""
    if raw is None:
        return ""
    if isinstance(raw, dict):
        raw = raw.get("_serialized") or raw.get("id") or ""
    return str(raw)


def _first(*values: Any) -> Any:
    for value in values:
        if value:
            return value
    return None


def _dig(data: Any, *path: str) -> Any:
    for part in path:
        if not isinstance(data, dict):
            return None
        data = data.get(part)
    return data


def extract_quoted_text(payload: dict) -> Optional[str]:
    quoted = _first(
        _dig(payload, "_data", "quotedMsg"),
        payload.get("quotedMsg"),
        _dig(payload, "_data", "message", "extendedTextMessage", "contextInfo", "quotedMessage"),
    )
    if isinstance(quoted, dict):
        if quoted.get("body"):
            return quoted["body"]
        if quoted.get("caption"):
            return quoted["caption"]
        if quoted.get("conversation"):
            return quoted["conversation"]
        placeholder = {
            "ptt": "[Voice Message]",
            "audio": "[Voice Message]",
            "image": "[Image Message]",
            "sticker": "[Sticker]",
            "video": "[Video Message]",
        }.get(quoted.get("type"))
        if placeholder:
            return placeholder
        nested = _dig(quoted, "extendedTextMessage", "text")
        if nested:
            return nested
    return _dig(payload, "replyTo", "body") or None


def extract_push_name(payload: dict) -> Optional[str]:
    return _first(
        payload.get("pushName"),
        _dig(payload, "_data", "notifyName"),
        payload.get("notifyName"),
        _dig(payload, "sender", "pushname"),
        _dig(payload, "sender", "name"),
        _dig(payload, "sender", "shortName"),
    )


def extract_media(payload: dict) -> list[MediaRef]:
    url = _first(payload.get("mediaUrl"), _dig(payload, "media", "url"))
    body = payload.get("body") or ""
    if not url and payload.get("hasMedia") and body.startswith("http"):
        url = body
    if not url:
        return []

    mime = _first(payload.get("mimetype"), _dig(payload, "media", "mimetype")) or ""
    msg_type = payload.get("type") or ""
    if mime.startswith("image/") or msg_type == "image":
        kind = "image"
    elif "audio" in mime or msg_type in ("ptt", "audio"):
        kind = "audio"
    else:
        kind = "other"
    return [MediaRef(url=url, kind=kind, mime=mime or None)]


def _has_media(payload: dict) -> bool:
    media = payload.get("media")
    return bool(
        payload.get("hasMedia")
        or (isinstance(media, dict) and media)
        or _dig(payload, "_data", "jpegThumbnail")
        or _dig(payload, "_data", "thumbnail")
    )


def _recipient(payload: dict) -> str:
    to_id = payload.get("to")
    if to_id:
        return to_id
    data_to = _dig(payload, "_data", "to")
    if isinstance(data_to, dict):
        return data_to.get("remote") or data_to.get("_serialized") or ""
    return data_to or ""


def _parse_timestamp(value: Any) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def _parse_message(channel_id: str, payload: dict) -> InboundEvent:
    message_id = normalize_message_id(payload.get("id"))
    if not message_id:
        raise MalformedEventError("message payload has no id")
    from_id = payload.get("from") or ""
    if not from_id:
        raise MalformedEventError(f"message {message_id} has no sender")

    media_refs = extract_media(payload)
    body = payload.get("body") or _dig(payload, "_data", "body") or ""
    if media_refs and body == media_refs[0].url:
        body = ""

    return InboundEvent(
        channel_id=channel_id,
        event_kind=EventKind.MESSAGE,
        message_id=message_id,
        from_id=from_id,
        to_id=_recipient(payload),
        body=body,
        media_refs=media_refs,
        is_outbound_echo=bool(payload.get("fromMe")),
        timestamp_seconds=_parse_timestamp(payload.get("timestamp")),
        quoted_message_id=normalize_message_id(_dig(payload, "replyTo", "id")) or None,
        quoted_text=extract_quoted_text(payload),
        push_name=extract_push_name(payload),
        message_type=payload.get("type") or payload.get("subtype") or "chat",
        has_media=bool(media_refs) or _has_media(payload),
    )


def _parse_label(channel_id: str, payload: dict, kind: EventKind) -> InboundEvent:
    chat_id = _first(payload.get("chatId"), payload.get("to"))
    if not chat_id:
        raise MalformedEventError("label event has no chat id")
    label_name = _first(payload.get("labelName"), _dig(payload, "label", "name"), payload.get("body"))
    return InboundEvent(
        channel_id=channel_id,
        event_kind=kind,
        label_name=label_name or "Unknown Label",
        label_chat_id=chat_id,
    )


def parse_event(envelope: dict) -> Optional[InboundEvent]:
    """Normalize a webhook envelope ``{event, session, payload}``.

    Returns None for event kinds the core does not consume. Raises
    MalformedEventError when a consumed event lacks required fields.
    """
    if not isinstance(envelope, dict):
        raise MalformedEventError("envelope is not an object")
    channel_id = envelope.get("session")
    payload = envelope.get("payload")
    if not channel_id or not isinstance(payload, dict):
        raise MalformedEventError("envelope is missing session or payload")

    event_name = str(envelope.get("event") or "").lower()
    if event_name in MESSAGE_EVENTS:
        return _parse_message(channel_id, payload)
    if event_name in STATE_EVENTS:
        return InboundEvent(
            channel_id=channel_id,
            event_kind=EventKind.STATE_CHANGE,
            status=_first(payload.get("body"), payload.get("status")),
        )
    if event_name in LABEL_EVENTS:
        return _parse_label(channel_id, payload, LABEL_EVENTS[event_name])
    return None

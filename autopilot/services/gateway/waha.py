import random
from typing import List, Optional

import httpx

from autopilot.config import settings
from autopilot.logging_config import get_logger
from autopilot.services.alert_service import alert_critical
from autopilot.services.gateway.base import MessagingGateway
from autopilot.services.inbound import normalize_message_id

logger = get_logger("gateway.waha")

LABEL_COLORS = [
    "#ff9485", "#64c4ff", "#ffd429", "#dfaef0", "#99b6c1",
    "#55ccb3", "#ff9dff", "#d3a91d", "#6d7cce", "#d7e752",
]

_PRESENCE_ENDPOINTS = {"seen": "/api/sendSeen", "typing": "/api/startTyping"}


def guess_image_mime(url: str) -> str:
    lowered = url.lower().split("?")[0]
    if lowered.endswith(".png"):
        return "image/png"
    if lowered.endswith(".webp"):
        return "image/webp"
    if lowered.endswith(".gif"):
        return "image/gif"
    return "image/jpeg"


class WahaGateway(MessagingGateway):
    """WAHA HTTP API client."""

    def __init__(
        self,
        base_url: str = settings.waha_base_url,
        api_key: Optional[str] = settings.waha_api_key,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-Api-Key"] = self.api_key
        return httpx.AsyncClient(
            base_url=self.base_url, headers=headers, timeout=self.timeout, transport=self._transport
        )

    async def send_text(self, channel_id: str, recipient_id: str, text: str) -> Optional[str]:
        if not text:
            return None
        payload = {"session": channel_id, "chatId": recipient_id, "text": text}
        try:
            async with self._client() as client:
                response = await client.post("/api/sendText", json=payload)
                response.raise_for_status()
                data = response.json() if response.content else {}
        except Exception as e:
            logger.error(
                f"Send text failed: {e}",
                extra={"context": {"channel_id": channel_id, "participant_id": recipient_id}},
            )
            await alert_critical("WhatsApp send failed", {"session": channel_id, "chat": recipient_id, "error": str(e)})
            return None
        return normalize_message_id(data.get("id") if isinstance(data, dict) else None) or None

    async def send_media(self, channel_id: str, recipient_id: str, url: str, caption: Optional[str] = None) -> Optional[str]:
        payload = {
            "session": channel_id,
            "chatId": recipient_id,
            "file": {"mimetype": guess_image_mime(url), "url": url, "filename": url.rsplit("/", 1)[-1] or "image"},
            "caption": caption or "",
        }
        try:
            async with self._client() as client:
                response = await client.post("/api/sendImage", json=payload)
                response.raise_for_status()
                data = response.json() if response.content else {}
        except Exception as e:
            logger.error(
                f"Send image failed: {e}",
                extra={"context": {"channel_id": channel_id, "participant_id": recipient_id, "url": url}},
            )
            return None
        return normalize_message_id(data.get("id") if isinstance(data, dict) else None) or None

    async def send_presence(self, channel_id: str, recipient_id: str, kind: str) -> None:
        endpoint = _PRESENCE_ENDPOINTS.get(kind)
        if endpoint is None:
            logger.warning(f"Unknown presence kind: {kind}")
            return
        try:
            async with self._client() as client:
                response = await client.post(endpoint, json={"session": channel_id, "chatId": recipient_id})
                response.raise_for_status()
        except Exception as e:
            logger.debug(f"Presence {kind} failed for {recipient_id}: {e}")

    async def _get_chat_labels(self, client: httpx.AsyncClient, channel_id: str, participant_id: str) -> list:
        response = await client.get(f"/api/{channel_id}/labels/chats/{participant_id}")
        response.raise_for_status()
        data = response.json()
        return data if isinstance(data, list) else []

    async def get_labels(self, channel_id: str, participant_id: str) -> Optional[List[str]]:
        try:
            async with self._client() as client:
                labels = await self._get_chat_labels(client, channel_id, participant_id)
        except Exception as e:
            logger.warning(
                f"Label lookup failed: {e}",
                extra={"context": {"channel_id": channel_id, "participant_id": participant_id}},
            )
            return None
        return [label.get("name", "") for label in labels if isinstance(label, dict)]

    async def _find_or_create_label(self, client: httpx.AsyncClient, channel_id: str, name: str) -> Optional[dict]:
        response = await client.get(f"/api/{channel_id}/labels")
        response.raise_for_status()
        existing = response.json() or []
        for label in existing:
            if str(label.get("name", "")).lower() == name.lower():
                return label

        response = await client.post(
            f"/api/{channel_id}/labels", json={"name": name, "colorHex": random.choice(LABEL_COLORS)}
        )
        if response.status_code in (400, 422):
            # Created concurrently; fetch again.
            response = await client.get(f"/api/{channel_id}/labels")
            response.raise_for_status()
            for label in response.json() or []:
                if str(label.get("name", "")).lower() == name.lower():
                    return label
            return None
        response.raise_for_status()
        return response.json()

    async def apply_label(self, channel_id: str, participant_id: str, name: str) -> bool:
        try:
            async with self._client() as client:
                target = await self._find_or_create_label(client, channel_id, name)
                if not target:
                    logger.warning(f"Could not create label '{name}' on {channel_id}")
                    return False
                current = await self._get_chat_labels(client, channel_id, participant_id)
                if any(label.get("id") == target.get("id") for label in current):
                    return True
                labels = [{"id": label.get("id")} for label in current] + [{"id": target.get("id")}]
                response = await client.put(
                    f"/api/{channel_id}/labels/chats/{participant_id}", json={"labels": labels}
                )
                response.raise_for_status()
        except Exception as e:
            logger.error(
                f"Apply label '{name}' failed: {e}",
                extra={"context": {"channel_id": channel_id, "participant_id": participant_id}},
            )
            return False
        logger.info(
            f"Label '{name}' applied",
            extra={"context": {"channel_id": channel_id, "participant_id": participant_id}},
        )
        return True

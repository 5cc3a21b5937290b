from typing import List, Optional

import httpx

from autopilot.config import settings
from autopilot.domain import Author, LockState, MediaRef, MessageRecord
from autopilot.logging_config import get_logger
from autopilot.services.llm.base import GeneratedReply, MediaAnalysis, ResponseGenerator

logger = get_logger("llm.openai")

DEFAULT_VISION_PROMPT = "Describe this image briefly. If it shows a product, name it and list visible details."

_HISTORY_ROLES = {Author.USER: "user", Author.AUTOMATION: "assistant", Author.ADMIN: "assistant"}


def history_to_messages(history: List[MessageRecord]) -> List[dict]:
    """Chronological chat messages from newest-first history. System audit rows are skipped."""
    messages = []
    for record in reversed(history):
        role = _HISTORY_ROLES.get(record.author)
        if role is None and record.text.startswith("[IMAGE MEMORY]"):
            role = "assistant"
        if role is None or not record.text:
            continue
        messages.append({"role": role, "content": record.text})
    return messages


class OpenAIResponseGenerator(ResponseGenerator):
    """OpenAI chat completions, vision and audio transcription."""

    def __init__(
        self,
        api_key: Optional[str] = settings.openai_api_key,
        model: str = settings.openai_model,
        vision_model: str = settings.openai_vision_model,
        transcription_model: str = settings.openai_transcription_model,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.vision_model = vision_model
        self.transcription_model = transcription_model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.base_url = "https://api.openai.com/v1/chat/completions"
        self.audio_url = "https://api.openai.com/v1/audio/transcriptions"
        self._transport = transport

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.api_key}"}

    async def _complete(self, messages: List[dict], model: str, timeout: float = 60.0) -> dict:
        payload = {
            "model": model,
            "messages": messages,
            "temperature": self.temperature,
            "max_completion_tokens": self.max_tokens,
        }
        logger.debug(f"OpenAI request: model={model}, messages_count={len(messages)}")
        async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
            response = await client.post(self.base_url, headers=self._headers(), json=payload)

        logger.debug(f"OpenAI response status: {response.status_code}")
        if response.status_code != 200:
            logger.error(f"OpenAI error: {response.text}")
            raise Exception(f"OpenAI API error: {response.status_code} - {response.text}")
        return response.json()

    @staticmethod
    def _content(data: dict) -> str:
        choices = data.get("choices") or []
        if not choices:
            return ""
        return (choices[0].get("message", {}).get("content") or "").strip()

    async def generate(
        self,
        turn_text: str,
        history: List[MessageRecord],
        media_refs: List[MediaRef],
        *,
        lock_state: Optional[LockState] = None,
        instructions: Optional[str] = None,
    ) -> Optional[GeneratedReply]:
        messages: List[dict] = []
        if instructions:
            messages.append({"role": "system", "content": instructions})
        messages.extend(history_to_messages(history))

        images = [ref for ref in media_refs if ref.kind == "image"]
        if images:
            content = [{"type": "text", "text": turn_text}]
            content.extend({"type": "image_url", "image_url": {"url": ref.url}} for ref in images)
            messages.append({"role": "user", "content": content})
        else:
            messages.append({"role": "user", "content": turn_text})

        data = await self._complete(messages, self.model)
        content = self._content(data)
        if not content:
            logger.warning("OpenAI returned empty content; staying silent")
            return None
        return GeneratedReply(text=content, model=data.get("model", self.model), usage=data.get("usage"))

    async def describe_media(self, media: MediaRef, prompt: Optional[str] = None) -> MediaAnalysis:
        if media.kind == "audio":
            return await self._transcribe(media)
        if media.kind != "image":
            return MediaAnalysis(text="")

        messages = [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": prompt or DEFAULT_VISION_PROMPT},
                    {"type": "image_url", "image_url": {"url": media.url}},
                ],
            }
        ]
        data = await self._complete(messages, self.vision_model, timeout=30.0)
        usage = data.get("usage") or {}
        return MediaAnalysis(text=self._content(data), tokens=usage.get("total_tokens", 0))

    async def _transcribe(self, media: MediaRef) -> MediaAnalysis:
        async with httpx.AsyncClient(timeout=30.0, transport=self._transport) as client:
            download = await client.get(media.url)
            download.raise_for_status()
            audio_bytes = download.content
            if not audio_bytes:
                raise ValueError("audio download is empty")

            files = {"file": ("voice.ogg", audio_bytes, media.mime or "application/octet-stream")}
            response = await client.post(
                self.audio_url,
                headers=self._headers(),
                files=files,
                data={"model": self.transcription_model, "response_format": "text"},
            )

        logger.debug(f"OpenAI transcription status: {response.status_code}")
        if response.status_code != 200:
            logger.error(f"OpenAI transcription error: {response.text}")
            raise Exception(f"OpenAI transcription error: {response.status_code} - {response.text}")

        transcript = (response.text or "").strip()
        if not transcript:
            logger.warning("OpenAI transcription returned empty text")
        return MediaAnalysis(text=transcript)

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

from autopilot.domain import LockState, MediaRef, MessageRecord


@dataclass
class OutboundMedia:
    url: str
    title: str = ""


@dataclass
class GeneratedReply:
    text: str
    model: str
    media: List[OutboundMedia] = field(default_factory=list)
    usage: Optional[dict] = None

    @property
    def total_tokens(self) -> Optional[int]:
        if not self.usage:
            return None
        return self.usage.get("total_tokens")


@dataclass
class MediaAnalysis:
    text: str
    tokens: int = 0


class ResponseGenerator(ABC):
    """Produces the automated reply for one conversational turn."""

    @abstractmethod
    async def generate(
        self,
        turn_text: str,
        history: List[MessageRecord],
        media_refs: List[MediaRef],
        *,
        lock_state: Optional[LockState] = None,
        instructions: Optional[str] = None,
    ) -> Optional[GeneratedReply]:
        """Generate a reply. None means stay silent, which is not an error."""
        pass

    @abstractmethod
    async def describe_media(self, media: MediaRef, prompt: Optional[str] = None) -> MediaAnalysis:
        """Describe an image or transcribe audio. Empty text when nothing came back."""
        pass

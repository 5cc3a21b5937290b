from abc import ABC, abstractmethod
from typing import List, Optional


class MessagingGateway(ABC):
    """Outbound side of the messaging gateway."""

    @abstractmethod
    async def send_text(self, channel_id: str, recipient_id: str, text: str) -> Optional[str]:
        """Send text. Returns the gateway message id, or None if the send failed."""
        pass

    @abstractmethod
    async def send_media(self, channel_id: str, recipient_id: str, url: str, caption: Optional[str] = None) -> Optional[str]:
        pass

    @abstractmethod
    async def send_presence(self, channel_id: str, recipient_id: str, kind: str) -> None:
        """kind is "seen" or "typing"."""
        pass

    @abstractmethod
    async def get_labels(self, channel_id: str, participant_id: str) -> Optional[List[str]]:
        """Label names on the chat. None means the lookup itself failed."""
        pass

    @abstractmethod
    async def apply_label(self, channel_id: str, participant_id: str, name: str) -> bool:
        pass

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from autopilot.domain import ChannelRecord, ConversationKey, LockState, MessageRecord, OrderRecord


class ConversationStore(ABC):
    """Durable audit log, lock records and channel sessions."""

    @abstractmethod
    async def append_message(self, record: MessageRecord) -> None:
        """Insert or update a message by its message id."""
        pass

    @abstractmethod
    async def get_message_text(self, message_id: str) -> Optional[str]:
        pass

    @abstractmethod
    async def get_recent_messages(self, channel_id: str, participant_id: str, limit: int) -> List[MessageRecord]:
        """Messages exchanged with the participant in either direction, newest first."""
        pass

    @abstractmethod
    async def count_automation_replies_since(self, channel_id: str, participant_id: str, since: datetime) -> int:
        pass

    @abstractmethod
    async def get_lock_state(self, key: ConversationKey) -> Optional[LockState]:
        pass

    @abstractmethod
    async def set_lock_state(self, state: LockState) -> None:
        pass

    @abstractmethod
    async def touch_contact(self, key: ConversationKey, name: Optional[str] = None) -> None:
        pass

    @abstractmethod
    async def get_channel(self, channel_id: str) -> Optional[ChannelRecord]:
        pass

    @abstractmethod
    async def register_channel(self, channel_id: str, status: str = "connected") -> ChannelRecord:
        pass

    @abstractmethod
    async def update_channel_status(self, channel_id: str, status: str, active: Optional[bool] = None) -> None:
        pass

    @abstractmethod
    async def decrement_credit(self, channel_id: str, amount: int = 1) -> None:
        pass

    @abstractmethod
    async def save_order(self, order: OrderRecord) -> None:
        pass

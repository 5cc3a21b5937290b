from autopilot.models.channel_session import ChannelSession
from autopilot.models.chat_message import ChatMessage
from autopilot.models.contact import Contact
from autopilot.models.order import OrderTracking

__all__ = ["ChannelSession", "ChatMessage", "Contact", "OrderTracking"]

import uuid

from sqlalchemy import BigInteger, Boolean, Column, Index, Integer, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.sql import func

from autopilot.database import Base


class ChatMessage(Base):
    __tablename__ = "chat_messages"
    __table_args__ = (Index("ix_chat_messages_conversation", "session_name", "sender_id", "recipient_id", "timestamp"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    session_name = Column(Text, nullable=False)
    sender_id = Column(Text, nullable=False)
    recipient_id = Column(Text, nullable=False)
    message_id = Column(Text, nullable=False, unique=True)
    text = Column(Text, nullable=False, default="")
    timestamp = Column(BigInteger, nullable=False)  # epoch ms
    status = Column(Text, nullable=False, default="received")  # received, sent, system_error, system_notice, image_memory
    reply_by = Column(Text, nullable=False)  # user, admin, bot, system
    model_used = Column(Text)
    token_usage = Column(Integer)
    is_group = Column(Boolean, default=False)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

import uuid

from sqlalchemy import Boolean, Column, Float, Integer, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.sql import func

from autopilot.database import Base


class ChannelSession(Base):
    __tablename__ = "channel_sessions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    session_name = Column(Text, nullable=False, unique=True)
    status = Column(Text, nullable=False, default="connected")  # WORKING, STOPPED, scanned, STARTING, connected
    active = Column(Boolean, nullable=False, default=True)
    subscription_status = Column(Text)  # active, trial, active_trial, active_paid, expired
    message_credit = Column(Integer, nullable=False, default=0)
    api_key = Column(Text)
    cheap_engine = Column(Boolean, default=True)
    wait_time = Column(Float)
    lock_emojis = Column(Text)
    unlock_emojis = Column(Text)
    block_emoji = Column(Text)
    unblock_emoji = Column(Text)
    emoji_check_count = Column(Integer)
    blocking_labels = Column(Text)
    history_limit = Column(Integer)
    group_reply = Column(Boolean, default=True)
    system_prompt = Column(Text)
    vision_prompt = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

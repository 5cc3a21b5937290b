import uuid

from sqlalchemy import Boolean, Column, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.sql import func

from autopilot.database import Base


class Contact(Base):
    """Participant of a channel. Also carries the durable handover lock."""

    __tablename__ = "contacts"
    __table_args__ = (UniqueConstraint("session_name", "phone_number", name="uq_contacts_session_phone"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    session_name = Column(Text, nullable=False)
    phone_number = Column(Text, nullable=False)
    name = Column(Text)
    is_locked = Column(Boolean, nullable=False, default=False)
    locked_until = Column(TIMESTAMP(timezone=True))
    lock_source = Column(Text)  # emoji, label, adminReply, orderFlow
    lock_updated_at = Column(TIMESTAMP(timezone=True))
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

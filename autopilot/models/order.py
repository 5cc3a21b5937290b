import uuid

from sqlalchemy import Column, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.sql import func

from autopilot.database import Base


class OrderTracking(Base):
    __tablename__ = "order_tracking"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    session_name = Column(Text, nullable=False)
    sender_id = Column(Text, nullable=False)
    number = Column(Text, nullable=False)
    product_name = Column(Text, nullable=False)
    location = Column(Text, default="")
    product_quantity = Column(Text, default="1")
    price = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

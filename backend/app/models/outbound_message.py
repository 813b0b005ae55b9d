"""OutboundMessage model: notification outbox written with each transition."""

from sqlalchemy import Column, DateTime, Index, Integer, String, Text, func
from sqlalchemy.types import JSON

from app.core.database import Base
from app.models.shared import UUIDType, generate_uuid


class OutboundMessage(Base):
    """Outbound notification awaiting best-effort delivery."""

    __tablename__ = "outbound_messages"
    __table_args__ = (
        Index("ix_outbound_messages_message_type", "message_type"),
        Index("ix_outbound_messages_status", "status"),
    )

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    message_type = Column(String(100), nullable=False)
    object_type = Column(String(50), nullable=True)
    object_id = Column(UUIDType, nullable=True)
    payload = Column(JSON, nullable=False)
    status = Column(String(50), nullable=False, default="pending")
    retries = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=5)
    last_retried_at = Column(DateTime(timezone=True), nullable=True)
    http_status = Column(Integer, nullable=True)
    response = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

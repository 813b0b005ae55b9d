"""ParkedEvent model: dead-lettered provider events awaiting retry or review."""

from enum import Enum

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text, func

from app.core.database import Base
from app.models.shared import UUIDType, generate_uuid


class ParkedEventStatus(str, Enum):
    PARKED = "parked"
    RESOLVED = "resolved"
    DISCARDED = "discarded"


class ParkedEvent(Base):
    __tablename__ = "parked_events"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    dedup_key = Column(String(512), nullable=False, unique=True, index=True)
    provider = Column(String(20), nullable=False)
    event_type = Column(String(50), nullable=False)
    lineage_key = Column(String(512), nullable=True, index=True)
    payload = Column(JSON, nullable=False)
    error_code = Column(String(50), nullable=False)
    error_message = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=1)
    status = Column(String(20), nullable=False, default=ParkedEventStatus.PARKED.value, index=True)
    next_attempt_at = Column(DateTime(timezone=True), nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

"""IdempotencyRecord model: one row per processed provider event."""

from sqlalchemy import Column, DateTime, String, func

from app.core.database import Base
from app.models.shared import UUIDType, generate_uuid


class IdempotencyRecord(Base):
    """Durable marker that a provider event has already been applied.

    The row is inserted in the same transaction as the event's effects, so
    the unique ``dedup_key`` is what makes at-least-once delivery safe.
    """

    __tablename__ = "idempotency_records"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    dedup_key = Column(String(512), nullable=False, unique=True, index=True)
    provider = Column(String(20), nullable=False)
    provider_event_id = Column(String(255), nullable=False)
    event_type = Column(String(50), nullable=False)
    lineage_key = Column(String(512), nullable=True, index=True)
    outcome = Column(String(20), nullable=False)
    initiated_by = Column(String(255), nullable=True)
    processed_at = Column(DateTime(timezone=True), server_default=func.now())

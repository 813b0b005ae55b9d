from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from app.models.parked_event import ParkedEventStatus


class ParkedEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    dedup_key: str
    provider: str
    event_type: str
    lineage_key: str | None
    payload: dict[str, Any]
    error_code: str
    error_message: str | None
    attempts: int
    status: ParkedEventStatus
    next_attempt_at: datetime | None
    resolved_at: datetime | None
    created_at: datetime

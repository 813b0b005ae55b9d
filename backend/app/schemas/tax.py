from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class TaxRateUpsert(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    rate: Decimal = Field(ge=0, le=1)


class TaxRateResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    country_code: str
    name: str
    rate: Decimal
    created_at: datetime
    updated_at: datetime

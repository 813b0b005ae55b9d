from sqlalchemy import Column, DateTime, Numeric, String, func

from app.core.database import Base
from app.models.shared import UUIDType, generate_uuid


class TaxRate(Base):
    """Tax rate applied to invoices for a billing country."""

    __tablename__ = "tax_rates"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    country_code = Column(String(2), unique=True, index=True, nullable=False)
    name = Column(String(255), nullable=False)
    rate = Column(Numeric(7, 4), nullable=False)  # 0.2000 = 20%

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String, Text, func

from app.core.database import Base
from app.models.shared import UUIDType, generate_uuid


class PurchaseVerification(Base):
    """Audit row for each client-submitted purchase verification."""

    __tablename__ = "purchase_verifications"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    user_id = Column(
        UUIDType, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    provider = Column(String(20), nullable=False)
    product_id = Column(String(255), nullable=True)
    transaction_id = Column(String(255), nullable=True)
    subscription_id = Column(UUIDType, nullable=True)
    environment = Column(String(20), nullable=True)
    success = Column(Boolean, nullable=False)
    reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

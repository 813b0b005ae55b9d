"""User projection consumed by the tier resolver and authorization middleware."""

from sqlalchemy import Column, DateTime, String, func

from app.core.database import Base
from app.models.plan import SubscriptionTier
from app.models.shared import UUIDType, generate_uuid


class User(Base):
    """The subset of the account record this service owns.

    Accounts are created elsewhere; reconciliation only writes
    ``subscription_tier`` and ``subscription_expires_at``.
    """

    __tablename__ = "users"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    email = Column(String(255), unique=True, index=True, nullable=True)
    subscription_tier = Column(String(20), nullable=False, default=SubscriptionTier.FREE.value)
    subscription_expires_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

from uuid import UUID

from sqlalchemy.orm import Session

from app.models.purchase_verification import PurchaseVerification


class PurchaseVerificationRepository:
    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        *,
        user_id: UUID,
        provider: str,
        success: bool,
        product_id: str | None = None,
        transaction_id: str | None = None,
        subscription_id: UUID | None = None,
        environment: str | None = None,
        reason: str | None = None,
    ) -> PurchaseVerification:
        record = PurchaseVerification(
            user_id=user_id,
            provider=provider,
            success=success,
            product_id=product_id,
            transaction_id=transaction_id,
            subscription_id=subscription_id,
            environment=environment,
            reason=reason,
        )
        self.db.add(record)
        self.db.flush()
        return record

    def get_by_user(self, user_id: UUID) -> list[PurchaseVerification]:
        return (
            self.db.query(PurchaseVerification)
            .filter(PurchaseVerification.user_id == user_id)
            .order_by(PurchaseVerification.created_at.desc())
            .all()
        )

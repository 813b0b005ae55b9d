from uuid import UUID

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.models.payment import PaymentProvider
from app.models.plan import BillingInterval, Plan
from app.schemas.plan import PlanCreate, PlanUpdate

# Product id columns per provider, paired with the interval they bill.
PRODUCT_COLUMNS: dict[PaymentProvider, tuple[tuple[str, BillingInterval], ...]] = {
    PaymentProvider.STRIPE: (
        ("stripe_price_id_monthly", BillingInterval.MONTHLY),
        ("stripe_price_id_yearly", BillingInterval.YEARLY),
    ),
    PaymentProvider.APPLE: (
        ("apple_product_id_monthly", BillingInterval.MONTHLY),
        ("apple_product_id_yearly", BillingInterval.YEARLY),
    ),
    PaymentProvider.GOOGLE: (
        ("google_product_id_monthly", BillingInterval.MONTHLY),
        ("google_product_id_yearly", BillingInterval.YEARLY),
    ),
}


class PlanRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_all(self, skip: int = 0, limit: int = 100) -> list[Plan]:
        return self.db.query(Plan).order_by(Plan.code).offset(skip).limit(limit).all()

    def get_by_id(self, plan_id: UUID) -> Plan | None:
        return self.db.query(Plan).filter(Plan.id == plan_id).first()

    def get_by_code(self, code: str) -> Plan | None:
        return self.db.query(Plan).filter(Plan.code == code).first()

    def find_by_product(
        self, provider: PaymentProvider, product_id: str
    ) -> tuple[Plan, BillingInterval] | None:
        """Resolve a provider product id to its plan and billing interval.

        Manual grants reference the plan directly by id or code.
        """
        if provider == PaymentProvider.MANUAL:
            plan = None
            try:
                plan = self.get_by_id(UUID(product_id))
            except ValueError:
                pass
            plan = plan or self.get_by_code(product_id)
            return (plan, BillingInterval.MONTHLY) if plan else None

        columns = PRODUCT_COLUMNS[provider]
        plan = (
            self.db.query(Plan)
            .filter(or_(*(getattr(Plan, column) == product_id for column, _ in columns)))
            .first()
        )
        if plan is None:
            return None
        for column, interval in columns:
            if getattr(plan, column) == product_id:
                return plan, interval
        return None

    def create(self, data: PlanCreate) -> Plan:
        plan = Plan(**data.model_dump(mode="python"))
        plan.tier = data.tier.value  # type: ignore[assignment]
        self.db.add(plan)
        self.db.flush()
        return plan

    def update(self, plan: Plan, data: PlanUpdate) -> Plan:
        update_data = data.model_dump(exclude_unset=True)
        if update_data.get("tier") is not None:
            update_data["tier"] = update_data["tier"].value
        for key, value in update_data.items():
            setattr(plan, key, value)
        self.db.flush()
        return plan

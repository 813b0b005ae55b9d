from enum import Enum
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.core.auth import require_admin
from app.core.database import get_db
from app.core.errors import NotFoundError, PlanInUseError
from app.models.plan import PLAN_METADATA_FIELDS, Plan
from app.repositories.plan_repository import PlanRepository
from app.repositories.subscription_repository import SubscriptionRepository
from app.schemas.plan import PlanCreate, PlanResponse, PlanUpdate

router = APIRouter()


def _get_plan(repo: PlanRepository, plan_id: UUID) -> Plan:
    plan = repo.get_by_id(plan_id)
    if plan is None:
        raise NotFoundError(f"Plan {plan_id} not found", plan_id=str(plan_id))
    return plan


@router.get(
    "/",
    response_model=list[PlanResponse],
    summary="List plans",
)
async def list_plans(
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
) -> list[Plan]:
    return PlanRepository(db).get_all(skip=skip, limit=limit)


@router.get(
    "/{plan_id}",
    response_model=PlanResponse,
    summary="Get plan",
    responses={404: {"description": "Plan not found"}},
)
async def get_plan(
    plan_id: UUID,
    db: Session = Depends(get_db),
) -> Plan:
    return _get_plan(PlanRepository(db), plan_id)


@router.post(
    "/",
    response_model=PlanResponse,
    status_code=201,
    summary="Create plan",
    responses={
        401: {"description": "Unauthorized"},
        409: {"description": "Plan with this code already exists"},
    },
)
async def create_plan(
    data: PlanCreate,
    db: Session = Depends(get_db),
    admin_id: str = Depends(require_admin),
) -> Plan:
    repo = PlanRepository(db)
    if repo.get_by_code(data.code):
        raise HTTPException(status_code=409, detail="Plan with this code already exists")
    plan = repo.create(data)
    db.commit()
    db.refresh(plan)
    return plan


@router.patch(
    "/{plan_id}",
    response_model=PlanResponse,
    summary="Update plan",
    responses={
        401: {"description": "Unauthorized"},
        404: {"description": "Plan not found"},
        409: {"description": "Plan is referenced by live subscriptions"},
    },
)
async def update_plan(
    plan_id: UUID,
    data: PlanUpdate,
    db: Session = Depends(get_db),
    admin_id: str = Depends(require_admin),
) -> Plan:
    """Pricing, tier and product mappings are frozen while live subscriptions use the plan."""
    repo = PlanRepository(db)
    plan = _get_plan(repo, plan_id)

    changed = {
        key
        for key, value in data.model_dump(exclude_unset=True).items()
        if getattr(plan, key) != (value.value if isinstance(value, Enum) else value)
    }
    frozen = changed - PLAN_METADATA_FIELDS
    if frozen:
        live = SubscriptionRepository(db).count_live_for_plan(plan_id)
        if live:
            raise PlanInUseError(
                f"Plan {plan.code} has {live} live subscriptions",
                plan_id=str(plan_id),
                fields=sorted(frozen),
            )

    plan = repo.update(plan, data)
    db.commit()
    db.refresh(plan)
    return plan

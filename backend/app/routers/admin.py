"""Admin operations: manual grants, parked-event triage, background jobs and tax rates.

Every endpoint requires the admin bearer key. Manual grants, extensions and
revocations go through the reconciliation engine as MANUAL provider events so
they share its idempotency and locking. Send an ``Idempotency-Key`` header to
make a retried admin request safe.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, Path, Query, Request
from sqlalchemy.orm import Session

from app.core.auth import require_admin
from app.core.database import get_db
from app.core.errors import NotFoundError
from app.core.idempotency import admin_event_id
from app.models.parked_event import ParkedEvent, ParkedEventStatus
from app.models.subscription import Subscription
from app.models.tax import TaxRate
from app.repositories.plan_repository import PlanRepository
from app.repositories.subscription_repository import SubscriptionRepository
from app.repositories.tax_repository import TaxRepository
from app.schemas.parked_event import ParkedEventResponse
from app.schemas.subscription import (
    ApplyResultResponse,
    ExtendSubscriptionRequest,
    GrantSubscriptionRequest,
    RevokeSubscriptionRequest,
    SubscriptionResponse,
)
from app.schemas.tax import TaxRateResponse, TaxRateUpsert
from app.services.parked_events import ParkedEventService
from app.services.payment_provider import ManualProvider
from app.services.reconciliation import ApplyResult, ReconciliationEngine
from app.tasks import (
    enqueue_grace_period_expiry,
    enqueue_outbound_delivery,
    enqueue_parked_event_retry,
)

router = APIRouter()


def _to_response(result: ApplyResult) -> ApplyResultResponse:
    return ApplyResultResponse(
        outcome=result.outcome.value,
        subscription=(
            SubscriptionResponse.model_validate(result.subscription)
            if result.subscription is not None
            else None
        ),
        detail=result.detail,
    )


def _get_subscription(db: Session, subscription_id: UUID) -> Subscription:
    subscription = SubscriptionRepository(db).get_by_id(subscription_id)
    if subscription is None:
        raise NotFoundError(
            f"Subscription {subscription_id} not found", subscription_id=str(subscription_id)
        )
    return subscription


@router.post(
    "/subscriptions/grant",
    response_model=ApplyResultResponse,
    summary="Grant a subscription",
    responses={401: {"description": "Unauthorized"}, 404: {"description": "Plan not found"}},
)
def grant_subscription(
    data: GrantSubscriptionRequest,
    request: Request,
    db: Session = Depends(get_db),
    admin_id: str = Depends(require_admin),
) -> ApplyResultResponse:
    """Give a user a plan for a fixed number of days, superseding any live subscription."""
    plan = PlanRepository(db).get_by_id(data.plan_id)
    if plan is None:
        raise NotFoundError(f"Plan {data.plan_id} not found", plan_id=str(data.plan_id))
    event = ManualProvider().grant(
        data.user_id,
        plan,
        data.duration_days,
        granted_by=admin_id,
        event_id=admin_event_id(request),
        reason=data.reason,
    )
    return _to_response(ReconciliationEngine(db).apply(event))


@router.post(
    "/subscriptions/{subscription_id}/extend",
    response_model=ApplyResultResponse,
    summary="Extend a subscription",
    responses={401: {"description": "Unauthorized"}, 404: {"description": "Subscription not found"}},
)
def extend_subscription(
    subscription_id: UUID,
    data: ExtendSubscriptionRequest,
    request: Request,
    db: Session = Depends(get_db),
    admin_id: str = Depends(require_admin),
) -> ApplyResultResponse:
    subscription = _get_subscription(db, subscription_id)
    event = ManualProvider().extend(
        subscription,
        data.days,
        granted_by=admin_id,
        event_id=admin_event_id(request),
        reason=data.reason,
    )
    return _to_response(ReconciliationEngine(db).apply(event))


@router.post(
    "/subscriptions/{subscription_id}/revoke",
    response_model=ApplyResultResponse,
    summary="Revoke a subscription",
    responses={401: {"description": "Unauthorized"}, 404: {"description": "Subscription not found"}},
)
def revoke_subscription(
    subscription_id: UUID,
    data: RevokeSubscriptionRequest,
    request: Request,
    db: Session = Depends(get_db),
    admin_id: str = Depends(require_admin),
) -> ApplyResultResponse:
    subscription = _get_subscription(db, subscription_id)
    event = ManualProvider().revoke(
        subscription,
        granted_by=admin_id,
        event_id=admin_event_id(request),
        reason=data.reason,
    )
    return _to_response(ReconciliationEngine(db).apply(event))


@router.get(
    "/parked-events",
    response_model=list[ParkedEventResponse],
    summary="List parked events",
    responses={401: {"description": "Unauthorized"}},
)
async def list_parked_events(
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    status: ParkedEventStatus | None = ParkedEventStatus.PARKED,
    error_code: str | None = None,
    db: Session = Depends(get_db),
    admin_id: str = Depends(require_admin),
) -> list[ParkedEvent]:
    return ParkedEventService(db).list_parked(
        skip=skip, limit=limit, status=status, error_code=error_code
    )


@router.post(
    "/parked-events/{parked_event_id}/replay",
    response_model=ApplyResultResponse,
    summary="Replay a parked event",
    responses={
        401: {"description": "Unauthorized"},
        404: {"description": "Parked event not found"},
        409: {"description": "Parked event already resolved or discarded"},
    },
)
def replay_parked_event(
    parked_event_id: UUID,
    db: Session = Depends(get_db),
    admin_id: str = Depends(require_admin),
) -> ApplyResultResponse:
    return _to_response(ParkedEventService(db).replay(parked_event_id))


@router.post(
    "/parked-events/{parked_event_id}/discard",
    response_model=ParkedEventResponse,
    summary="Discard a parked event",
    responses={
        401: {"description": "Unauthorized"},
        404: {"description": "Parked event not found"},
        409: {"description": "Parked event already resolved or discarded"},
    },
)
async def discard_parked_event(
    parked_event_id: UUID,
    db: Session = Depends(get_db),
    admin_id: str = Depends(require_admin),
) -> ParkedEvent:
    return ParkedEventService(db).discard(parked_event_id)


@router.post(
    "/jobs/deliver-outbox",
    status_code=202,
    summary="Enqueue outbound delivery",
    description="Deliver pending outbound messages now instead of waiting for the next cron run.",
    responses={401: {"description": "Unauthorized"}},
)
async def enqueue_outbox_delivery(admin_id: str = Depends(require_admin)) -> dict[str, str]:
    job = await enqueue_outbound_delivery()
    return {"job_id": job.job_id}


@router.post(
    "/jobs/retry-parked-events",
    status_code=202,
    summary="Enqueue parked event retry",
    responses={401: {"description": "Unauthorized"}},
)
async def enqueue_parked_retry(admin_id: str = Depends(require_admin)) -> dict[str, str]:
    job = await enqueue_parked_event_retry()
    return {"job_id": job.job_id}


@router.post(
    "/jobs/expire-subscriptions",
    status_code=202,
    summary="Enqueue subscription expiry",
    description="Expire subscriptions whose grace period or final period has ended.",
    responses={401: {"description": "Unauthorized"}},
)
async def enqueue_subscription_expiry(admin_id: str = Depends(require_admin)) -> dict[str, str]:
    job = await enqueue_grace_period_expiry()
    return {"job_id": job.job_id}


@router.get(
    "/tax-rates",
    response_model=list[TaxRateResponse],
    summary="List tax rates",
    responses={401: {"description": "Unauthorized"}},
)
async def list_tax_rates(
    db: Session = Depends(get_db),
    admin_id: str = Depends(require_admin),
) -> list[TaxRate]:
    return TaxRepository(db).get_all()


@router.put(
    "/tax-rates/{country_code}",
    response_model=TaxRateResponse,
    summary="Set the tax rate for a country",
    responses={401: {"description": "Unauthorized"}},
)
async def upsert_tax_rate(
    data: TaxRateUpsert,
    country_code: str = Path(min_length=2, max_length=2),
    db: Session = Depends(get_db),
    admin_id: str = Depends(require_admin),
) -> TaxRate:
    """Only invoices created afterwards use the new rate."""
    tax_rate = TaxRepository(db).upsert(country_code, data.name, data.rate)
    db.commit()
    db.refresh(tax_rate)
    return tax_rate

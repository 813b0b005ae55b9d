"""Inbound provider webhooks.

Each handler verifies the request before reading it, turns it into a canonical
event and hands it to the reconciliation engine. A 2xx response means the event
was committed, parked, or recognized as already processed.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, Header, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.errors import MalformedPayloadError, ReconciliationError, VerificationError
from app.models.payment import PaymentProvider
from app.schemas.provider_event import ProviderEvent
from app.services.parked_events import ParkedEventService
from app.services.payment_provider import StripeProvider
from app.services.payment_providers.apple import AppleProvider
from app.services.payment_providers.google import GoogleProvider
from app.services.reconciliation import ReconciliationEngine

logger = logging.getLogger(__name__)

router = APIRouter()


def get_stripe_provider() -> StripeProvider:
    return StripeProvider()


def get_apple_provider() -> AppleProvider:
    return AppleProvider()


def get_google_provider() -> GoogleProvider:
    return GoogleProvider()


def _apply(db: Session, event: ProviderEvent | None) -> dict[str, Any]:
    if event is None:
        return {"status": "ignored", "detail": "Notification carries no subscription effect"}
    result = ReconciliationEngine(db).apply(event)
    response: dict[str, Any] = {"status": result.outcome.value}
    if result.detail:
        response["detail"] = result.detail
    if result.subscription is not None:
        response["subscription_id"] = str(result.subscription.id)
    return response


async def _json_body(request: Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        raise MalformedPayloadError("Request body is not valid JSON") from None
    if not isinstance(body, dict):
        raise MalformedPayloadError("Request body must be a JSON object")
    return body


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
    provider: StripeProvider = Depends(get_stripe_provider),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Handle Stripe webhook events signed with the endpoint secret."""
    payload = await request.body()
    try:
        event_json = provider.verify_webhook(payload, stripe_signature)
    except VerificationError as exc:
        logger.warning("Rejected Stripe webhook: %s", exc.message)
        raise
    return await run_in_threadpool(_apply, db, provider.canonicalize(event_json))


def _apply_apple(db: Session, provider: AppleProvider, body: dict[str, Any]) -> dict[str, Any]:
    try:
        event = provider.canonicalize(body)
    except VerificationError as exc:
        logger.warning("Rejected Apple notification: %s", exc.message)
        raise
    return _apply(db, event)


@router.post("/apple")
async def apple_webhook(
    request: Request,
    provider: AppleProvider = Depends(get_apple_provider),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Handle App Store Server Notifications V2 (``{"signedPayload": ...}``)."""
    body = await _json_body(request)
    return await run_in_threadpool(_apply_apple, db, provider, body)


def _verify_push(provider: GoogleProvider, authorization: str | None) -> None:
    try:
        provider.token_verifier.verify(authorization)
    except VerificationError as exc:
        logger.warning("Rejected Pub/Sub push: %s", exc.message)
        raise


def _apply_google(db: Session, provider: GoogleProvider, body: dict[str, Any]) -> dict[str, Any]:
    message, _ = provider.decode_push(body)
    try:
        event = provider.canonicalize(body)
    except ReconciliationError as exc:
        # Pub/Sub redelivers anything but a 2xx, so failed Play lookups are dead-lettered here.
        parked = ParkedEventService(db).park_raw(
            PaymentProvider.GOOGLE, message.message_id, body, exc
        )
        return {"status": "parked", "parked_event_id": str(parked.id)}
    return _apply(db, event)


@router.post("/google")
async def google_webhook(
    request: Request,
    authorization: str | None = Header(None),
    provider: GoogleProvider = Depends(get_google_provider),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Handle Google Play real-time developer notifications pushed by Pub/Sub."""
    await run_in_threadpool(_verify_push, provider, authorization)
    body = await _json_body(request)
    return await run_in_threadpool(_apply_google, db, provider, body)

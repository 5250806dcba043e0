"""Subscription API endpoints."""

from datetime import datetime

import structlog
from fastapi import APIRouter, Header, HTTPException, Request
from pydantic import BaseModel

from plantgate.auth import AuthenticatedSubject, CurrentSubject
from plantgate.config import get_settings
from plantgate.constants import PAYMENT_SIGNATURE_HEADER
from plantgate.exceptions import (
    ConfigurationError,
    InvalidSubscriptionError,
    TransientStorageFailure,
)
from plantgate.models.entitlements import (
    BillingCycle,
    PlanTier,
    Subscription,
    SubscriptionStatus,
)
from plantgate.services.payment_events import parse_activation_event
from plantgate.services.subscription_ledger import SubscriptionLedger

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/subscription", tags=["subscription"])


class SubscriptionStatusResponse(BaseModel):
    """Current plan of the requesting subject."""

    plan_tier: PlanTier
    status: SubscriptionStatus | None = None
    is_active: bool
    subscription_id: str | None = None
    billing_cycle: BillingCycle | None = None
    end_date: datetime | None = None
    stale: bool = False


class ActivationResponse(BaseModel):
    """Payment webhook processing response."""

    received: bool
    subscription: Subscription


def _get_ledger(request: Request) -> SubscriptionLedger:
    ledger = getattr(request.app.state, "subscription_ledger", None)
    if ledger is None:
        raise HTTPException(status_code=503, detail="Subscription service unavailable")
    return ledger


@router.get("", response_model=SubscriptionStatusResponse)
async def subscription_status(request: Request, subject: CurrentSubject) -> SubscriptionStatusResponse:
    """Return the authoritative plan for the subject. Guests are always free."""
    ledger = _get_ledger(request)
    try:
        subscription = await ledger.refresh(subject)
    except TransientStorageFailure:
        raise HTTPException(status_code=503, detail="Could not load your subscription. Try again shortly.")

    return SubscriptionStatusResponse(
        plan_tier=ledger.current_tier(subject),
        status=ledger.current_status(subject),
        is_active=ledger.is_active(subject),
        subscription_id=subscription.id if subscription else None,
        billing_cycle=subscription.billing_cycle if subscription else None,
        end_date=subscription.end_date if subscription else None,
        stale=ledger.is_stale(subject),
    )


@router.post("/activate", response_model=ActivationResponse)
async def activate_subscription(
    request: Request,
    payment_signature: str | None = Header(default=None, alias=PAYMENT_SIGNATURE_HEADER),
) -> ActivationResponse:
    """Process a signed "subscription activated" event. Replays are no-ops."""
    ledger = _get_ledger(request)
    payload = await request.body()

    try:
        event = parse_activation_event(payload, payment_signature, get_settings().payment_webhook_secret)
    except ConfigurationError:
        raise HTTPException(status_code=503, detail="Payment webhook is not configured")
    except InvalidSubscriptionError as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        subscription = await ledger.activate(event)
    except InvalidSubscriptionError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except TransientStorageFailure:
        raise HTTPException(status_code=503, detail="Could not store the subscription")

    logger.info(
        "payment_event_processed",
        payment_reference=event.payment_reference,
        subscription_id=subscription.id,
    )
    return ActivationResponse(received=True, subscription=subscription)


@router.post("/{subscription_id}/cancel", response_model=Subscription)
async def cancel_subscription(
    subscription_id: str,
    request: Request,
    subject: AuthenticatedSubject,
) -> Subscription:
    """Cancel one of the user's subscriptions. Cancellation is terminal."""
    ledger = _get_ledger(request)
    try:
        return await ledger.cancel(subject, subscription_id)
    except InvalidSubscriptionError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except TransientStorageFailure:
        raise HTTPException(status_code=503, detail="Could not cancel the subscription. Try again shortly.")

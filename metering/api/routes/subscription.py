"""Subscription routes: status, Stripe sync and the Stripe webhook."""

import stripe
import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from metering.api.deps import get_billing, get_subscription_store
from metering.billing.store import SubscriptionStore, SubscriptionView
from metering.billing.stripe_sync import NoBillingAccountError, StripeBilling
from metering.core.auth import AuthUser, require_auth
from metering.core.config import get_settings

logger = structlog.get_logger(__name__)

router = APIRouter()


class SyncResponse(BaseModel):
    status: str
    plan: str


@router.get("/subscription/status", response_model=SubscriptionView)
async def get_subscription_status(
    user: AuthUser = Depends(require_auth),
    store: SubscriptionStore = Depends(get_subscription_store),
):
    """Return the caller's subscription; users who never subscribed read as free."""
    return await store.get_subscription_view(user.user_id)


@router.post("/subscription/sync", response_model=SyncResponse)
async def sync_subscription(
    user: AuthUser = Depends(require_auth),
    billing: StripeBilling = Depends(get_billing),
):
    """Reconcile the caller's subscription row with Stripe."""
    try:
        result = await billing.sync_user(user.user_id)
    except NoBillingAccountError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except stripe.StripeError as exc:
        logger.error("stripe_sync_failed", user_id=user.user_id, error=str(exc))
        raise HTTPException(status_code=502, detail="Failed to sync subscription")
    return SyncResponse(**result)


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    billing: StripeBilling = Depends(get_billing),
):
    """Handle Stripe webhook events with signature verification."""
    settings = get_settings()
    if not settings.stripe_webhook_secret:
        logger.error("stripe_webhook_secret_missing")
        raise HTTPException(status_code=503, detail="Stripe webhook endpoint is not configured")

    body = await request.body()
    sig_header = request.headers.get("stripe-signature")
    if not sig_header:
        raise HTTPException(status_code=400, detail="Missing stripe-signature header")

    try:
        event = stripe.Webhook.construct_event(body, sig_header, settings.stripe_webhook_secret)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        raise HTTPException(status_code=400, detail="Invalid signature")

    event_type = event["type"]
    if not await billing.claim_event(event["id"], event_type):
        logger.info("stripe_duplicate_event_ignored", event_id=event["id"])
        return {"status": "ok"}

    logger.info("stripe_webhook_received", event_type=event_type, event_id=event["id"])
    await billing.handle_event(event_type, event["data"]["object"])
    return {"status": "ok"}

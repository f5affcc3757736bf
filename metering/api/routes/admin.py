"""Admin API routes: usage and subscription corrections."""

import structlog
from fastapi import APIRouter, Depends, HTTPException

from metering.api.deps import get_subscription_store, get_usage_store
from metering.api.schemas.admin import SubscriptionCorrection, UsageAdjustment
from metering.billing.store import SubscriptionStore, SubscriptionView
from metering.core.auth import AuthUser, require_admin
from metering.usage.store import UsageSnapshot, UsageStore

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


async def _ensure_user(store: SubscriptionStore, user_id: str) -> None:
    if not await store.user_exists(user_id):
        raise HTTPException(status_code=404, detail="User not found")


@router.post("/users/{user_id}/usage", response_model=UsageSnapshot)
async def adjust_usage(
    user_id: str,
    body: UsageAdjustment,
    admin: AuthUser = Depends(require_admin),
    store: UsageStore = Depends(get_usage_store),
    subscriptions: SubscriptionStore = Depends(get_subscription_store),
):
    """Add to a user's current-month counter through the atomic upsert."""
    await _ensure_user(subscriptions, user_id)
    snapshot = await store.increment(user_id, body.resource, body.amount)
    logger.info(
        "admin_usage_adjusted",
        admin_id=admin.user_id,
        user_id=user_id,
        resource=body.resource.value,
        amount=body.amount,
    )
    return snapshot


@router.put("/users/{user_id}/subscription", response_model=SubscriptionView)
async def correct_subscription(
    user_id: str,
    body: SubscriptionCorrection,
    admin: AuthUser = Depends(require_admin),
    store: SubscriptionStore = Depends(get_subscription_store),
):
    """Overwrite a user's subscription status and plan."""
    await _ensure_user(store, user_id)
    fields = body.model_dump(exclude_none=True)
    fields["status"] = body.status.value
    fields["plan"] = body.plan.value
    await store.upsert_subscription(user_id, **fields)
    logger.info(
        "admin_subscription_corrected",
        admin_id=admin.user_id,
        user_id=user_id,
        status=body.status.value,
        plan=body.plan.value,
    )
    return await store.get_subscription_view(user_id)

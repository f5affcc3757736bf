"""Usage routes: overview, warnings, history, permission checks and tracking."""

import structlog
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from metering.api.deps import get_evaluator, get_tracker, get_usage_store
from metering.core.auth import AuthUser, require_auth
from metering.core.exceptions import QuotaExceededError, StoreUnavailableError
from metering.permissions.evaluator import (
    PermissionCode,
    PermissionEvaluator,
    PermissionResult,
    UsageOverview,
    UsageWarnings,
)
from metering.plans.limits import ResourceKind
from metering.usage.store import UsageSnapshot, UsageStore
from metering.usage.tracker import UsageTracker

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/usage")


# ── Request / Response schemas ──────────────────────────────────────


class UsageCheckRequest(BaseModel):
    resource: ResourceKind | None = None
    model_id: str | None = None
    # Raise 402 on denial instead of returning the result
    enforce: bool = False


class TrackUsageRequest(BaseModel):
    resource: ResourceKind
    amount: int = Field(default=1, ge=1, le=1000)


class TrackUsageResponse(BaseModel):
    status: str = "accepted"


def _denial_code(result: PermissionResult) -> str:
    if result.code is PermissionCode.ONBOARDING_REQUIRED:
        return "onboarding_required"
    return "upgrade_required" if result.requires_upgrade else "limit_reached"


# ── Endpoints ───────────────────────────────────────────────────────


@router.get("", response_model=UsageOverview)
async def get_usage(
    user: AuthUser = Depends(require_auth),
    evaluator: PermissionEvaluator = Depends(get_evaluator),
):
    """Current month's usage against the plan's limits, all resources."""
    return await evaluator.usage_overview(user.user_id)


@router.get("/warnings", response_model=UsageWarnings)
async def get_usage_warnings(
    user: AuthUser = Depends(require_auth),
    evaluator: PermissionEvaluator = Depends(get_evaluator),
):
    return await evaluator.usage_warnings(user.user_id)


@router.get("/history", response_model=list[UsageSnapshot])
async def get_usage_history(
    limit: int = Query(12, ge=1, le=36),
    user: AuthUser = Depends(require_auth),
    store: UsageStore = Depends(get_usage_store),
):
    """Retained monthly rows, newest first."""
    return await store.history(user.user_id, limit=limit)


@router.post("/check", response_model=PermissionResult)
async def check_usage(
    body: UsageCheckRequest,
    user: AuthUser = Depends(require_auth),
    evaluator: PermissionEvaluator = Depends(get_evaluator),
):
    """Evaluate one metered action for the caller.

    Without ``resource`` the model decides between basic and premium
    interactions and the onboarding check applies, as for a chat message.
    """
    if body.resource is None:
        result = await evaluator.check_chat_permissions(user.user_id, body.model_id)
    else:
        result = await evaluator.evaluate(user.user_id, body.resource, model_id=body.model_id)

    if body.enforce and not result.allowed:
        if result.code is PermissionCode.PERMISSION_CHECK_ERROR:
            raise StoreUnavailableError(result.reason)
        raise QuotaExceededError(
            result.reason,
            code=_denial_code(result),
            result=result,
        )
    return result


@router.post("/track", response_model=TrackUsageResponse, status_code=202)
async def track_usage(
    body: TrackUsageRequest,
    user: AuthUser = Depends(require_auth),
    tracker: UsageTracker = Depends(get_tracker),
):
    """Record a completed action. Returns before the counter is written."""
    tracker.track_async(user.user_id, body.resource, body.amount)
    return TrackUsageResponse()

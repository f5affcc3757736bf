"""Fast permission evaluator.

Answers "may this user perform this metered action right now?" with a single
round trip: the user row, its subscription and the current month's usage
counters are read in one outer-joined SELECT. Any failure to read that row
denies the action.
"""

from datetime import UTC, datetime
from enum import Enum

import structlog
from pydantic import BaseModel
from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from metering.core.exceptions import StoreUnavailableError
from metering.db.base import get_session_factory
from metering.db.models.subscription import Subscription
from metering.db.models.usage_counter import UsageCounter
from metering.db.models.user import User
from metering.plans.limits import (
    Plan,
    ResourceKind,
    effective_plan,
    get_limits,
    get_plan_features,
    is_approaching_limit,
    is_unlimited,
    model_is_premium,
    remaining_usage,
    resource_for_model,
    upgrade_message,
    usage_percentage,
)
from metering.usage.store import current_month

logger = structlog.get_logger(__name__)

UNABLE_TO_VERIFY = "Unable to verify permissions"


class PermissionCode(str, Enum):
    ONBOARDING_REQUIRED = "ONBOARDING_REQUIRED"
    MODEL_ACCESS_DENIED = "MODEL_ACCESS_DENIED"
    UPGRADE_REQUIRED = "UPGRADE_REQUIRED"
    USAGE_LIMIT_EXCEEDED = "USAGE_LIMIT_EXCEEDED"
    PERMISSION_CHECK_ERROR = "PERMISSION_CHECK_ERROR"


class UsageInfo(BaseModel):
    current: int
    limit: int  # -1 = unlimited
    percentage: float


class PermissionResult(BaseModel):
    allowed: bool
    reason: str | None = None
    code: PermissionCode | None = None
    usage: UsageInfo | None = None
    should_show_upgrade: bool = False
    plan: Plan = Plan.FREE
    resource: ResourceKind | None = None

    @property
    def requires_upgrade(self) -> bool:
        """True when the plan has no allowance at all, as opposed to a spent quota."""
        return self.code in (PermissionCode.UPGRADE_REQUIRED, PermissionCode.MODEL_ACCESS_DENIED)


class ResourceUsage(BaseModel):
    resource: ResourceKind
    label: str
    current: int
    limit: int
    percentage: float
    remaining: int


class UsageOverview(BaseModel):
    user_id: str
    month: str
    plan: Plan
    resources: list[ResourceUsage]
    should_notify: bool


class UsageWarning(BaseModel):
    resource: ResourceKind
    message: str
    percentage: float
    current: int
    limit: int


class UsageWarnings(BaseModel):
    warnings: list[UsageWarning]
    should_show_upgrade: bool


def check_limit(
    current: int,
    limit: int,
    resource: ResourceKind,
    plan: Plan,
    threshold: float = 80.0,
) -> PermissionResult:
    """Compare one counter to its quota. Shared by every resource kind."""
    if is_unlimited(limit):
        return PermissionResult(
            allowed=True,
            usage=UsageInfo(current=current, limit=limit, percentage=0.0),
            plan=plan,
            resource=resource,
        )

    percentage = usage_percentage(current, limit)

    if current < limit:
        return PermissionResult(
            allowed=True,
            usage=UsageInfo(current=current, limit=limit, percentage=percentage),
            should_show_upgrade=percentage >= threshold and plan is Plan.FREE,
            plan=plan,
            resource=resource,
        )

    if limit == 0:
        code = PermissionCode.UPGRADE_REQUIRED
        reason = f"{resource.label} requires a subscription. Please upgrade your plan."
    else:
        code = PermissionCode.USAGE_LIMIT_EXCEEDED
        reason = (
            f"You've reached your monthly limit of {limit:,} {resource.label.lower()}. "
            "Please upgrade to continue."
        )

    return PermissionResult(
        allowed=False,
        reason=reason,
        code=code,
        usage=UsageInfo(current=current, limit=limit, percentage=percentage),
        should_show_upgrade=True,
        plan=plan,
        resource=resource,
    )


def _fail_closed(resource: ResourceKind | None = None) -> PermissionResult:
    return PermissionResult(
        allowed=False,
        reason=UNABLE_TO_VERIFY,
        code=PermissionCode.PERMISSION_CHECK_ERROR,
        resource=resource,
    )


class PermissionEvaluator:
    """Plan/quota gate backed by one combined read per evaluation."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        now=None,
        threshold: float = 80.0,
    ):
        self._session_factory = session_factory
        self._now = now or (lambda: datetime.now(UTC))
        self._threshold = threshold

    def _factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    def combined_query(self, user_id: str, month: str):
        """User outer-joined with its subscription and one month of counters."""
        counters = UsageCounter.__table__.c
        return (
            select(
                User.id.label("user_id"),
                User.onboarding_completed,
                Subscription.status.label("subscription_status"),
                Subscription.plan.label("subscription_plan"),
                *[counters[r.value] for r in ResourceKind],
            )
            .select_from(User)
            .outerjoin(Subscription, Subscription.user_id == User.id)
            .outerjoin(
                UsageCounter,
                and_(UsageCounter.user_id == User.id, UsageCounter.month == month),
            )
            .where(User.id == user_id)
        )

    async def _load(self, user_id: str):
        month = current_month(self._now())
        async with self._factory()() as session:
            result = await session.execute(self.combined_query(user_id, month))
            return month, result.mappings().one_or_none()

    async def evaluate(
        self,
        user_id: str,
        resource: ResourceKind | str,
        *,
        model_id: str | None = None,
        require_onboarding: bool = False,
    ) -> PermissionResult:
        """Decide whether ``user_id`` may consume one unit of ``resource``.

        Never raises: store failures and unknown users produce a denial with
        code ``PERMISSION_CHECK_ERROR``.
        """
        try:
            resource = ResourceKind(resource)
        except ValueError:
            logger.warning("permission_unknown_resource", user_id=user_id, resource=str(resource))
            return _fail_closed()

        try:
            _, row = await self._load(user_id)
        except Exception as exc:
            logger.error(
                "permission_check_failed",
                user_id=user_id,
                resource=resource.value,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return _fail_closed(resource)

        if row is None:
            logger.warning("permission_user_not_found", user_id=user_id, resource=resource.value)
            return _fail_closed(resource)

        plan = effective_plan(row["subscription_status"], row["subscription_plan"])

        if require_onboarding and not row["onboarding_completed"]:
            return PermissionResult(
                allowed=False,
                reason="Please complete onboarding first",
                code=PermissionCode.ONBOARDING_REQUIRED,
                plan=plan,
                resource=resource,
            )

        wants_premium = resource is ResourceKind.PREMIUM_INTERACTIONS or model_is_premium(model_id)
        if wants_premium and not get_plan_features(plan).can_access_premium_models:
            return PermissionResult(
                allowed=False,
                reason="Premium models require a subscription. Please upgrade your plan.",
                code=PermissionCode.MODEL_ACCESS_DENIED,
                should_show_upgrade=True,
                plan=plan,
                resource=resource,
            )

        current = row[resource.value] or 0
        limit = get_limits(plan).limit_for(resource)
        result = check_limit(current, limit, resource, plan, self._threshold)

        if not result.allowed:
            logger.info(
                "permission_denied",
                user_id=user_id,
                resource=resource.value,
                plan=plan.value,
                code=result.code.value,
                current=current,
                limit=limit,
            )
        return result

    async def check_chat_permissions(self, user_id: str, model_id: str | None) -> PermissionResult:
        """Gate one chat message: onboarding, premium model access, then the matching quota."""
        return await self.evaluate(
            user_id,
            resource_for_model(model_id),
            model_id=model_id,
            require_onboarding=True,
        )

    async def check_model_access(self, user_id: str, model_id: str | None) -> bool:
        """True when the user's plan may use ``model_id`` at all (quota not considered)."""
        if not model_is_premium(model_id):
            return True
        try:
            _, row = await self._load(user_id)
        except Exception as exc:
            logger.error("model_access_check_failed", user_id=user_id, error=str(exc))
            return False
        if row is None:
            return False
        plan = effective_plan(row["subscription_status"], row["subscription_plan"])
        return get_plan_features(plan).can_access_premium_models

    async def usage_overview(self, user_id: str) -> UsageOverview:
        """Current/limit/percentage for every resource.

        Unlike ``evaluate`` this surfaces store failures to the caller
        as ``StoreUnavailableError``; a missing user reads as an empty free account.
        """
        try:
            month, row = await self._load(user_id)
        except Exception as exc:
            logger.error("usage_overview_failed", user_id=user_id, error=str(exc))
            raise StoreUnavailableError("Usage data is temporarily unavailable") from exc

        row = row or {}
        plan = effective_plan(row.get("subscription_status"), row.get("subscription_plan"))
        limits = get_limits(plan)

        resources = []
        for kind in ResourceKind:
            current = row.get(kind.value) or 0
            limit = limits.limit_for(kind)
            resources.append(
                ResourceUsage(
                    resource=kind,
                    label=kind.label,
                    current=current,
                    limit=limit,
                    percentage=usage_percentage(current, limit),
                    remaining=remaining_usage(current, limit),
                )
            )

        return UsageOverview(
            user_id=user_id,
            month=month,
            plan=plan,
            resources=resources,
            should_notify=any(
                r.limit != 0 and is_approaching_limit(r.current, r.limit, self._threshold)
                for r in resources
            ),
        )

    async def usage_warnings(self, user_id: str) -> UsageWarnings:
        """Resources at or past the warning threshold, skipping ones the plan excludes."""
        overview = await self.usage_overview(user_id)

        warnings = []
        for item in overview.resources:
            if is_unlimited(item.limit) or item.limit == 0:
                continue
            if item.percentage < self._threshold:
                continue
            warnings.append(
                UsageWarning(
                    resource=item.resource,
                    message=(
                        f"You've used {item.percentage:.0f}% of your monthly "
                        f"{item.label.lower()}. {upgrade_message(item.resource, overview.plan)}"
                    ),
                    percentage=item.percentage,
                    current=item.current,
                    limit=item.limit,
                )
            )

        return UsageWarnings(
            warnings=warnings,
            should_show_upgrade=bool(warnings) and overview.plan is Plan.FREE,
        )

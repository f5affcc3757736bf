"""Subscription rows: reads for status endpoints, upserts for billing sync."""

from datetime import UTC, datetime

import structlog
from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from metering.db.base import get_session_factory
from metering.db.models.stripe_event import StripeWebhookEvent
from metering.db.models.subscription import Subscription, SubscriptionStatus
from metering.db.models.user import User
from metering.plans.limits import Plan, effective_plan, get_plan_features, resolve_plan

logger = structlog.get_logger(__name__)

SUBSCRIPTION_FIELDS = {
    "stripe_subscription_id",
    "status",
    "plan",
    "current_period_start",
    "current_period_end",
    "cancel_at_period_end",
    "trial_start",
    "trial_end",
}

_STATUS_VALUES = {s.value for s in SubscriptionStatus}


def normalize_status(status: str | None) -> str:
    """Fold billing-provider statuses we do not model (incomplete, paused, ...) into ``unpaid``."""
    if status is None:
        return SubscriptionStatus.FREE.value
    return status if status in _STATUS_VALUES else SubscriptionStatus.UNPAID.value


class SubscriptionView(BaseModel):
    user_id: str
    status: str
    plan: Plan
    effective_plan: Plan
    plan_name: str
    has_active_subscription: bool
    stripe_customer_id: str | None = None
    stripe_subscription_id: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    trial_end: datetime | None = None


class SubscriptionStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        self._session_factory = session_factory

    def _factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def get_subscription_view(self, user_id: str) -> SubscriptionView:
        """User outer-joined with its subscription; no row reads as free."""
        async with self._factory()() as session:
            result = await session.execute(
                select(User.stripe_customer_id, Subscription)
                .select_from(User)
                .outerjoin(Subscription, Subscription.user_id == User.id)
                .where(User.id == user_id)
            )
            row = result.one_or_none()

        customer_id, sub = (row[0], row[1]) if row is not None else (None, None)
        if sub is None:
            return SubscriptionView(
                user_id=user_id,
                status=SubscriptionStatus.FREE.value,
                plan=Plan.FREE,
                effective_plan=Plan.FREE,
                plan_name=get_plan_features(Plan.FREE).name,
                has_active_subscription=False,
                stripe_customer_id=customer_id,
            )

        effective = effective_plan(sub.status, sub.plan)
        return SubscriptionView(
            user_id=user_id,
            status=sub.status,
            plan=resolve_plan(sub.plan),
            effective_plan=effective,
            plan_name=get_plan_features(effective).name,
            has_active_subscription=sub.status in ("active", "trialing"),
            stripe_customer_id=customer_id,
            stripe_subscription_id=sub.stripe_subscription_id,
            current_period_start=sub.current_period_start,
            current_period_end=sub.current_period_end,
            cancel_at_period_end=bool(sub.cancel_at_period_end),
            trial_end=sub.trial_end,
        )

    async def upsert_subscription(self, user_id: str, **fields) -> None:
        """Insert or update the single subscription row for ``user_id``.

        Subscriptions are never deleted; cancellation is ``status="canceled"``.
        """
        unknown = set(fields) - SUBSCRIPTION_FIELDS
        if unknown:
            raise ValueError(f"Unknown subscription fields: {sorted(unknown)}")
        if "status" in fields:
            fields["status"] = normalize_status(fields["status"])
        if "plan" in fields:
            fields["plan"] = resolve_plan(fields["plan"]).value

        now = datetime.now(UTC)
        stmt = insert(Subscription).values(user_id=user_id, created_at=now, updated_at=now, **fields)
        stmt = stmt.on_conflict_do_update(
            index_elements=[Subscription.user_id],
            set_={**{k: stmt.excluded[k] for k in fields}, "updated_at": stmt.excluded.updated_at},
        )

        async with self._factory()() as session:
            await session.execute(stmt)
            await session.commit()

        logger.info(
            "subscription_upserted",
            user_id=user_id,
            status=fields.get("status"),
            plan=fields.get("plan"),
        )

    async def find_user_by_customer(self, customer_id: str) -> str | None:
        async with self._factory()() as session:
            result = await session.execute(select(User.id).where(User.stripe_customer_id == customer_id))
            return result.scalar_one_or_none()

    async def get_customer_id(self, user_id: str) -> str | None:
        async with self._factory()() as session:
            result = await session.execute(select(User.stripe_customer_id).where(User.id == user_id))
            return result.scalar_one_or_none()

    async def set_customer_id(self, user_id: str, customer_id: str) -> None:
        async with self._factory()() as session:
            await session.execute(
                update(User)
                .where(User.id == user_id, User.stripe_customer_id.is_(None))
                .values(stripe_customer_id=customer_id)
            )
            await session.commit()

    async def record_event(self, event_id: str, event_type: str | None = None) -> bool:
        """Claim a webhook event ID. False when it was already recorded."""
        stmt = (
            insert(StripeWebhookEvent)
            .values(event_id=event_id, event_type=event_type, processed_at=datetime.now(UTC))
            .on_conflict_do_nothing(index_elements=[StripeWebhookEvent.event_id])
            .returning(StripeWebhookEvent.event_id)
        )
        async with self._factory()() as session:
            result = await session.execute(stmt)
            claimed = result.scalar_one_or_none() is not None
            await session.commit()
        return claimed

    async def user_exists(self, user_id: str) -> bool:
        async with self._factory()() as session:
            result = await session.execute(select(User.id).where(User.id == user_id))
            return result.scalar_one_or_none() is not None

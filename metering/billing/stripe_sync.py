"""Stripe reconciliation: manual sync and webhook event handlers.

Both paths only write Subscription rows through ``SubscriptionStore``; the
database triggers take care of notifying connected clients.
"""

from datetime import UTC, datetime

import stripe
import structlog

from metering.billing.store import SubscriptionStore
from metering.core.config import get_settings
from metering.plans.limits import Plan

logger = structlog.get_logger(__name__)


def _configure_stripe() -> None:
    stripe.api_key = get_settings().stripe_secret_key


def price_plan_map() -> dict[str, Plan]:
    """Stripe price ID -> plan, built from configured price IDs."""
    settings = get_settings()
    mapping = {
        settings.stripe_price_basic_monthly: Plan.BASIC,
        settings.stripe_price_pro_monthly: Plan.PRO,
    }
    return {price: plan for price, plan in mapping.items() if price}


def _ts(value) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


def _first_item(subscription) -> dict:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def subscription_fields(subscription) -> dict:
    """Map a Stripe Subscription object onto Subscription row fields.

    Period bounds live on the subscription in older API versions and on the
    first item in newer ones; both are read.
    """
    item = _first_item(subscription)
    price_id = (item.get("price") or {}).get("id")
    plan = price_plan_map().get(price_id)
    if plan is None:
        logger.error("stripe_unknown_price", price_id=price_id, subscription_id=subscription.get("id"))
        plan = Plan.FREE

    return {
        "stripe_subscription_id": subscription.get("id"),
        "status": subscription.get("status"),
        "plan": plan.value,
        "current_period_start": _ts(subscription.get("current_period_start") or item.get("current_period_start")),
        "current_period_end": _ts(subscription.get("current_period_end") or item.get("current_period_end")),
        "cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
        "trial_start": _ts(subscription.get("trial_start")),
        "trial_end": _ts(subscription.get("trial_end")),
    }


class NoBillingAccountError(Exception):
    """Raised when a sync is requested for a user without a Stripe customer."""


class StripeBilling:
    def __init__(self, store: SubscriptionStore | None = None):
        self.store = store or SubscriptionStore()

    async def sync_user(self, user_id: str) -> dict:
        """Reconcile the user's row with Stripe's view of their subscriptions.

        Raises:
            NoBillingAccountError: If the user has never checked out
        """
        customer_id = await self.store.get_customer_id(user_id)
        if not customer_id:
            raise NoBillingAccountError("No Stripe customer ID found")

        _configure_stripe()
        subscriptions = await stripe.Subscription.list_async(
            customer=customer_id,
            status="active",
            limit=1,
            expand=["data.items.data.price"],
        )

        if not subscriptions.data:
            await self.store.upsert_subscription(user_id, status="canceled", plan=Plan.FREE.value)
            logger.info("stripe_sync_no_active_subscription", user_id=user_id)
            return {"status": "canceled", "plan": Plan.FREE.value}

        fields = subscription_fields(subscriptions.data[0])
        await self.store.upsert_subscription(user_id, **fields)
        logger.info("stripe_sync_complete", user_id=user_id, plan=fields["plan"], status=fields["status"])
        return {"status": fields["status"], "plan": fields["plan"]}

    # ── Webhooks ────────────────────────────────────────────────────

    async def claim_event(self, event_id: str, event_type: str | None = None) -> bool:
        """Return True if the event is new (claimed), False if already processed."""
        return await self.store.record_event(event_id, event_type)

    async def handle_event(self, event_type: str, data) -> None:
        handler = {
            "checkout.session.completed": self._handle_checkout_completed,
            "customer.subscription.created": self._handle_subscription_updated,
            "customer.subscription.updated": self._handle_subscription_updated,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "invoice.payment_failed": self._handle_payment_failed,
            "invoice.payment_succeeded": self._handle_payment_succeeded,
        }.get(event_type)

        if handler is None:
            logger.debug("stripe_event_ignored", event_type=event_type)
            return
        await handler(data)

    async def _handle_checkout_completed(self, session_data) -> None:
        metadata = session_data.get("metadata") or {}
        user_id = metadata.get("user_id")
        customer_id = session_data.get("customer")

        if not user_id:
            logger.warning("checkout_completed_missing_metadata", session_id=session_data.get("id"))
            return

        if customer_id:
            await self.store.set_customer_id(user_id, customer_id)

        await self.store.upsert_subscription(
            user_id,
            stripe_subscription_id=session_data.get("subscription"),
            status="active",
            plan=metadata.get("plan", Plan.FREE.value),
        )
        logger.info("plan_upgraded", user_id=user_id, plan=metadata.get("plan"))

    async def _user_for_customer(self, obj, event: str) -> str | None:
        customer_id = obj.get("customer")
        if not customer_id:
            return None
        user_id = await self.store.find_user_by_customer(customer_id)
        if user_id is None:
            logger.warning(f"{event}_unknown_customer", customer_id=customer_id)
        return user_id

    async def _handle_subscription_updated(self, subscription) -> None:
        user_id = await self._user_for_customer(subscription, "subscription_updated")
        if user_id is None:
            return
        await self.store.upsert_subscription(user_id, **subscription_fields(subscription))

    async def _handle_subscription_deleted(self, subscription) -> None:
        user_id = await self._user_for_customer(subscription, "subscription_deleted")
        if user_id is None:
            return
        await self.store.upsert_subscription(user_id, status="canceled", plan=Plan.FREE.value)
        logger.info("plan_downgraded_to_free", user_id=user_id)

    async def _handle_payment_failed(self, invoice) -> None:
        user_id = await self._user_for_customer(invoice, "payment_failed")
        if user_id is None:
            return
        # Plan is kept; Stripe may still recover the payment
        await self.store.upsert_subscription(user_id, status="past_due")

    async def _handle_payment_succeeded(self, invoice) -> None:
        if not invoice.get("subscription"):
            return
        user_id = await self._user_for_customer(invoice, "payment_succeeded")
        if user_id is None:
            return
        await self.store.upsert_subscription(user_id, status="active")

"""FastAPI dependencies for the per-process components built in the app lifespan."""

from fastapi import Request

from metering.billing.store import SubscriptionStore
from metering.billing.stripe_sync import StripeBilling
from metering.core.exceptions import StoreUnavailableError
from metering.permissions.evaluator import PermissionEvaluator
from metering.realtime.notifier import PgChangeNotifier
from metering.usage.store import UsageStore
from metering.usage.tracker import UsageTracker


def _component(request: Request, name: str):
    component = getattr(request.app.state, name, None)
    if component is None:
        raise StoreUnavailableError(f"{name} is not initialized")
    return component


def get_evaluator(request: Request) -> PermissionEvaluator:
    return _component(request, "evaluator")


def get_usage_store(request: Request) -> UsageStore:
    return _component(request, "usage_store")


def get_tracker(request: Request) -> UsageTracker:
    return _component(request, "tracker")


def get_subscription_store(request: Request) -> SubscriptionStore:
    return _component(request, "subscription_store")


def get_billing(request: Request) -> StripeBilling:
    return _component(request, "billing")


def get_notifier(request: Request) -> PgChangeNotifier:
    return _component(request, "notifier")


def get_rate_limiter(request: Request):
    return _component(request, "rate_limiter")

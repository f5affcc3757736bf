"""Admin API Pydantic schemas."""

from datetime import datetime

from pydantic import BaseModel, Field

from metering.db.models.subscription import SubscriptionStatus
from metering.plans.limits import Plan, ResourceKind


class UsageAdjustment(BaseModel):
    resource: ResourceKind
    amount: int = Field(ge=1)


class SubscriptionCorrection(BaseModel):
    status: SubscriptionStatus
    plan: Plan
    cancel_at_period_end: bool | None = None
    current_period_end: datetime | None = None

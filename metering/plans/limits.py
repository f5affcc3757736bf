"""Plan limit table, resource kinds and quota arithmetic helpers.

Plans are defined in code, never persisted. Every lookup falls back to the
free plan so an unknown or stale plan string can never grant extra quota.
"""

from dataclasses import dataclass
from enum import Enum

UNLIMITED = -1


class Plan(str, Enum):
    FREE = "free"
    BASIC = "basic"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class ResourceKind(str, Enum):
    """Metered resources. Values double as usage_counters column names."""

    BASIC_INTERACTIONS = "basic_interactions"
    PREMIUM_INTERACTIONS = "premium_interactions"
    MEMORIES_ADDED = "memories_added"
    MEMORIES_SEARCHED = "memories_searched"
    VOICE_CHATS = "voice_chats"
    VIDEOS_GENERATED = "videos_generated"

    @property
    def label(self) -> str:
        return RESOURCE_LABELS[self]


RESOURCE_LABELS: dict[ResourceKind, str] = {
    ResourceKind.BASIC_INTERACTIONS: "Basic interactions",
    ResourceKind.PREMIUM_INTERACTIONS: "Premium interactions",
    ResourceKind.MEMORIES_ADDED: "Memories added",
    ResourceKind.MEMORIES_SEARCHED: "Memory searches",
    ResourceKind.VOICE_CHATS: "Voice chats",
    ResourceKind.VIDEOS_GENERATED: "Videos generated",
}


@dataclass(frozen=True)
class PlanLimits:
    basic_interactions: int
    premium_interactions: int
    memories_added: int
    memories_searched: int
    voice_chats: int
    videos_generated: int

    def limit_for(self, resource: ResourceKind) -> int:
        return getattr(self, resource.value)


@dataclass(frozen=True)
class PlanFeatures:
    plan: Plan
    name: str
    description: str
    can_access_premium_models: bool
    limits: PlanLimits


PLAN_LIMITS: dict[Plan, PlanLimits] = {
    Plan.FREE: PlanLimits(
        basic_interactions=50,
        premium_interactions=0,
        memories_added=100,
        memories_searched=20,
        voice_chats=5,
        videos_generated=2,
    ),
    Plan.BASIC: PlanLimits(
        basic_interactions=1000,
        premium_interactions=200,
        memories_added=5000,
        memories_searched=1000,
        voice_chats=100,
        videos_generated=50,
    ),
    Plan.PRO: PlanLimits(
        basic_interactions=UNLIMITED,
        premium_interactions=500,
        memories_added=10000,
        memories_searched=2000,
        voice_chats=500,
        videos_generated=50,
    ),
    Plan.ENTERPRISE: PlanLimits(
        basic_interactions=UNLIMITED,
        premium_interactions=UNLIMITED,
        memories_added=UNLIMITED,
        memories_searched=UNLIMITED,
        voice_chats=UNLIMITED,
        videos_generated=UNLIMITED,
    ),
}

PLAN_FEATURES: dict[Plan, PlanFeatures] = {
    Plan.FREE: PlanFeatures(Plan.FREE, "Free", "Perfect for getting started", False, PLAN_LIMITS[Plan.FREE]),
    Plan.BASIC: PlanFeatures(Plan.BASIC, "Starter", "Great for regular users", True, PLAN_LIMITS[Plan.BASIC]),
    Plan.PRO: PlanFeatures(Plan.PRO, "Pro", "Best for power users", True, PLAN_LIMITS[Plan.PRO]),
    Plan.ENTERPRISE: PlanFeatures(
        Plan.ENTERPRISE, "Enterprise", "Unlimited everything", True, PLAN_LIMITS[Plan.ENTERPRISE]
    ),
}

# Subscription statuses that keep the paid plan in effect
PAID_STATUSES = {"active", "trialing", "past_due"}

# Chat models that need a paid plan
PREMIUM_MODELS = {
    "o4-mini",
    "claude-sonnet-4-20250514",
    "claude-3-7-sonnet-20250219",
    "claude-4-opus-20250514",
    "gemini-2.5-pro",
}


def resolve_plan(plan: str | Plan | None) -> Plan:
    """Map any plan string to a known Plan, defaulting to free."""
    if isinstance(plan, Plan):
        return plan
    try:
        return Plan(plan)
    except ValueError:
        return Plan.FREE


def get_limits(plan: str | Plan | None) -> PlanLimits:
    return PLAN_LIMITS[resolve_plan(plan)]


def get_plan_features(plan: str | Plan | None) -> PlanFeatures:
    return PLAN_FEATURES[resolve_plan(plan)]


def effective_plan(status: str | None, plan: str | None) -> Plan:
    """Plan whose limits are in effect for a subscription row.

    No row, or a status that no longer pays for the plan, always means free.
    """
    if status is None or status not in PAID_STATUSES:
        return Plan.FREE
    return resolve_plan(plan)


def model_is_premium(model_id: str | None) -> bool:
    return model_id in PREMIUM_MODELS


def resource_for_model(model_id: str | None) -> ResourceKind:
    if model_is_premium(model_id):
        return ResourceKind.PREMIUM_INTERACTIONS
    return ResourceKind.BASIC_INTERACTIONS


def is_unlimited(limit: int) -> bool:
    return limit == UNLIMITED


def is_over_limit(current: int, limit: int) -> bool:
    if is_unlimited(limit):
        return False
    return current >= limit


def usage_percentage(current: int, limit: int) -> float:
    """Percentage of quota used, clamped to 100. Unlimited is always 0."""
    if is_unlimited(limit):
        return 0.0
    if limit == 0:
        return 100.0
    return min(current / limit * 100, 100.0)


def is_approaching_limit(current: int, limit: int, threshold: float = 80.0) -> bool:
    if is_unlimited(limit):
        return False
    return usage_percentage(current, limit) >= threshold


def remaining_usage(current: int, limit: int) -> int:
    if is_unlimited(limit):
        return UNLIMITED
    return max(0, limit - current)


def format_usage_display(current: int, limit: int) -> str:
    if is_unlimited(limit):
        return f"{current:,} / Unlimited"
    return f"{current:,} / {limit:,}"


_UPGRADE_MESSAGES: dict[ResourceKind, tuple[str, str]] = {
    # resource -> (free plan message, paid plan message)
    ResourceKind.BASIC_INTERACTIONS: (
        "Upgrade to get more basic interactions and access to premium models",
        "Upgrade to get unlimited basic interactions",
    ),
    ResourceKind.PREMIUM_INTERACTIONS: (
        "Upgrade to access premium AI models with advanced reasoning",
        "Upgrade to get more premium interactions",
    ),
    ResourceKind.MEMORIES_ADDED: (
        "Upgrade to store more memories and build a larger knowledge base",
        "Upgrade to store even more memories",
    ),
    ResourceKind.MEMORIES_SEARCHED: (
        "Upgrade to search your memories more frequently",
        "Upgrade to get unlimited memory searches",
    ),
    ResourceKind.VOICE_CHATS: (
        "Upgrade to have more voice conversations with AI",
        "Upgrade to get unlimited voice chats",
    ),
    ResourceKind.VIDEOS_GENERATED: (
        "Upgrade to generate more videos",
        "Upgrade to generate unlimited videos",
    ),
}


def upgrade_message(resource: ResourceKind, plan: str | Plan) -> str:
    free_msg, paid_msg = _UPGRADE_MESSAGES[resource]
    return free_msg if resolve_plan(plan) is Plan.FREE else paid_msg

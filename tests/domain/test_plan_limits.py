"""Tests for the plan limit table and quota arithmetic helpers."""

import pytest

from metering.plans.limits import (
    PLAN_LIMITS,
    UNLIMITED,
    Plan,
    ResourceKind,
    effective_plan,
    format_usage_display,
    get_limits,
    get_plan_features,
    is_approaching_limit,
    is_over_limit,
    model_is_premium,
    remaining_usage,
    resource_for_model,
    upgrade_message,
    usage_percentage,
)

pytestmark = pytest.mark.unit


# ============================================================================
# Limit table
# ============================================================================


def test_free_plan_limits():
    limits = get_limits("free")
    assert limits.basic_interactions == 50
    assert limits.premium_interactions == 0
    assert limits.memories_added == 100
    assert limits.memories_searched == 20
    assert limits.voice_chats == 5
    assert limits.videos_generated == 2


def test_pro_plan_has_unlimited_basic_but_capped_premium():
    limits = get_limits(Plan.PRO)
    assert limits.basic_interactions == UNLIMITED
    assert limits.premium_interactions == 500


def test_enterprise_is_unlimited_everywhere():
    limits = get_limits("enterprise")
    assert all(limits.limit_for(r) == UNLIMITED for r in ResourceKind)


@pytest.mark.parametrize("plan", ["platinum", "", None, "FREE", "Pro"])
def test_unknown_plan_falls_back_to_free(plan):
    assert get_limits(plan) == get_limits("free")
    assert get_plan_features(plan).plan is Plan.FREE


def test_only_free_plan_lacks_premium_models():
    assert not get_plan_features("free").can_access_premium_models
    assert get_plan_features("basic").can_access_premium_models
    assert get_plan_features("pro").can_access_premium_models
    assert get_plan_features("enterprise").can_access_premium_models


def test_limit_for_reads_the_matching_column():
    limits = PLAN_LIMITS[Plan.BASIC]
    assert limits.limit_for(ResourceKind.VOICE_CHATS) == 100
    assert limits.limit_for(ResourceKind.MEMORIES_SEARCHED) == 1000


# ============================================================================
# Effective plan
# ============================================================================


@pytest.mark.parametrize(
    ("status", "plan", "expected"),
    [
        (None, None, Plan.FREE),
        ("active", "pro", Plan.PRO),
        ("trialing", "basic", Plan.BASIC),
        ("past_due", "basic", Plan.BASIC),
        ("canceled", "pro", Plan.FREE),
        ("free", "enterprise", Plan.FREE),
        ("unpaid", "pro", Plan.FREE),
        ("active", "legacy_gold", Plan.FREE),
    ],
)
def test_effective_plan(status, plan, expected):
    assert effective_plan(status, plan) is expected


# ============================================================================
# Arithmetic helpers
# ============================================================================


def test_unlimited_is_never_compared_numerically():
    assert not is_over_limit(10**9, UNLIMITED)
    assert usage_percentage(10**9, UNLIMITED) == 0.0
    assert not is_approaching_limit(10**9, UNLIMITED)
    assert remaining_usage(10**9, UNLIMITED) == UNLIMITED


def test_usage_percentage_is_clamped_to_100():
    assert usage_percentage(49, 50) == pytest.approx(98.0)
    assert usage_percentage(75, 50) == 100.0


def test_zero_limit_reads_as_full():
    assert usage_percentage(0, 0) == 100.0
    assert is_over_limit(0, 0)


def test_approaching_limit_boundary_is_inclusive():
    assert not is_approaching_limit(39, 50)
    assert is_approaching_limit(40, 50)


def test_remaining_usage_never_negative():
    assert remaining_usage(30, 50) == 20
    assert remaining_usage(80, 50) == 0


def test_format_usage_display():
    assert format_usage_display(12, UNLIMITED) == "12 / Unlimited"
    assert format_usage_display(1000, 5000) == "1,000 / 5,000"


# ============================================================================
# Models and messages
# ============================================================================


def test_premium_model_catalogue():
    assert model_is_premium("claude-sonnet-4-20250514")
    assert model_is_premium("gemini-2.5-pro")
    assert not model_is_premium("gpt-4o-mini")
    assert not model_is_premium(None)


def test_resource_for_model():
    assert resource_for_model("o4-mini") is ResourceKind.PREMIUM_INTERACTIONS
    assert resource_for_model("some-basic-model") is ResourceKind.BASIC_INTERACTIONS


def test_upgrade_message_differs_between_free_and_paid():
    free_msg = upgrade_message(ResourceKind.PREMIUM_INTERACTIONS, "free")
    paid_msg = upgrade_message(ResourceKind.PREMIUM_INTERACTIONS, "basic")
    assert "premium" in free_msg.lower()
    assert free_msg != paid_msg

"""
Pure entitlement rules. No I/O, no clock, never raises on well-formed input.

An active paid subscription is never blocked at the daily gate; its daily
limit is reported for display only. Everyone else gets the free daily limit
plus the bonuses earned today.
"""

from typing import assert_never

from plantgate.config import PlansConfig
from plantgate.models.entitlements import (
    AllowanceReason,
    GardenAllowance,
    PlanTier,
    ScanAllowance,
    SubscriptionStatus,
)


def _has_active_paid_plan(plan_tier: PlanTier, subscription_status: SubscriptionStatus | None) -> bool:
    if subscription_status != SubscriptionStatus.ACTIVE:
        return False
    if plan_tier == PlanTier.FREE:
        return False
    if plan_tier in (PlanTier.BASIC, PlanTier.PREMIUM):
        return True
    assert_never(plan_tier)


def resolve_scan_allowance(
    plan_tier: PlanTier,
    subscription_status: SubscriptionStatus | None,
    used_count: int,
    bonus_count: int,
    plans: PlansConfig,
) -> ScanAllowance:
    used_count = max(0, used_count)
    bonus_count = max(0, bonus_count)

    if _has_active_paid_plan(plan_tier, subscription_status):
        limit = plans.for_tier(plan_tier).daily_scan_limit
        return ScanAllowance(
            allowed=True,
            remaining=max(0, limit - used_count),
            limit=limit,
            reason=AllowanceReason.SUBSCRIPTION_ACTIVE,
        )

    limit = plans.free.daily_scan_limit + bonus_count
    remaining = max(0, limit - used_count)
    return ScanAllowance(
        allowed=remaining > 0,
        remaining=remaining,
        limit=limit,
        reason=AllowanceReason.FREE_AVAILABLE if remaining > 0 else AllowanceReason.FREE_EXHAUSTED,
    )


def resolve_garden_capacity(
    plan_tier: PlanTier,
    current_size: int,
    plans: PlansConfig,
) -> GardenAllowance:
    capacity = plans.for_tier(plan_tier).garden_capacity
    current_size = max(0, current_size)
    return GardenAllowance(
        allowed=current_size < capacity,
        remaining=max(0, capacity - current_size),
        capacity=capacity,
    )


def can_earn_bonus(clicks_today: int, daily_ad_cap: int) -> bool:
    return clicks_today < daily_ad_cap

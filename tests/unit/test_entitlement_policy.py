"""Unit tests for the pure entitlement rules."""

import pytest

from plantgate.config import PlansConfig
from plantgate.models.entitlements import AllowanceReason, PlanTier, SubscriptionStatus
from plantgate.services.entitlement_policy import (
    can_earn_bonus,
    resolve_garden_capacity,
    resolve_scan_allowance,
)

PLANS = PlansConfig()


class TestScanAllowanceFreeTier:
    def test_fresh_day_has_two_free_scans(self):
        allowance = resolve_scan_allowance(PlanTier.FREE, None, 0, 0, PLANS)

        assert allowance.allowed is True
        assert allowance.remaining == 2
        assert allowance.limit == 2
        assert allowance.reason == AllowanceReason.FREE_AVAILABLE

    def test_exhausted_after_free_limit(self):
        allowance = resolve_scan_allowance(PlanTier.FREE, None, 2, 0, PLANS)

        assert allowance.allowed is False
        assert allowance.remaining == 0
        assert allowance.reason == AllowanceReason.FREE_EXHAUSTED

    @pytest.mark.parametrize(
        ("used", "bonus", "expected_allowed"),
        [(2, 1, True), (3, 1, False), (3, 2, True), (4, 2, False)],
    )
    def test_bonus_extends_limit(self, used, bonus, expected_allowed):
        allowance = resolve_scan_allowance(PlanTier.FREE, None, used, bonus, PLANS)

        assert allowance.allowed is expected_allowed
        assert allowance.limit == 2 + bonus

    def test_overuse_never_reports_negative_remaining(self):
        allowance = resolve_scan_allowance(PlanTier.FREE, None, 9, 0, PLANS)

        assert allowance.remaining == 0

    def test_paid_tier_without_active_status_falls_back_to_free(self):
        allowance = resolve_scan_allowance(
            PlanTier.PREMIUM, SubscriptionStatus.EXPIRED, 2, 0, PLANS
        )

        assert allowance.allowed is False
        assert allowance.limit == 2

    def test_cancelled_basic_is_free(self):
        allowance = resolve_scan_allowance(
            PlanTier.BASIC, SubscriptionStatus.CANCELLED, 0, 0, PLANS
        )

        assert allowance.reason == AllowanceReason.FREE_AVAILABLE
        assert allowance.limit == 2


class TestScanAllowancePaidTier:
    @pytest.mark.parametrize(("tier", "limit"), [(PlanTier.BASIC, 10), (PlanTier.PREMIUM, 50)])
    def test_active_paid_reports_display_limit(self, tier, limit):
        allowance = resolve_scan_allowance(tier, SubscriptionStatus.ACTIVE, 3, 0, PLANS)

        assert allowance.allowed is True
        assert allowance.limit == limit
        assert allowance.remaining == limit - 3
        assert allowance.reason == AllowanceReason.SUBSCRIPTION_ACTIVE

    def test_active_paid_is_never_blocked(self):
        allowance = resolve_scan_allowance(
            PlanTier.BASIC, SubscriptionStatus.ACTIVE, 500, 0, PLANS
        )

        assert allowance.allowed is True
        assert allowance.remaining == 0

    def test_free_tier_with_active_status_is_still_free(self):
        allowance = resolve_scan_allowance(
            PlanTier.FREE, SubscriptionStatus.ACTIVE, 2, 0, PLANS
        )

        assert allowance.allowed is False


class TestGardenCapacity:
    @pytest.mark.parametrize(
        ("tier", "capacity"),
        [(PlanTier.FREE, 3), (PlanTier.BASIC, 5), (PlanTier.PREMIUM, 50)],
    )
    def test_capacity_per_tier(self, tier, capacity):
        allowance = resolve_garden_capacity(tier, 0, PLANS)

        assert allowance.capacity == capacity
        assert allowance.remaining == capacity

    def test_full_garden_denies(self):
        allowance = resolve_garden_capacity(PlanTier.FREE, 3, PLANS)

        assert allowance.allowed is False
        assert allowance.remaining == 0

    def test_one_slot_left(self):
        allowance = resolve_garden_capacity(PlanTier.FREE, 2, PLANS)

        assert allowance.allowed is True
        assert allowance.remaining == 1


class TestCanEarnBonus:
    def test_under_cap(self):
        assert can_earn_bonus(0, 2) is True
        assert can_earn_bonus(1, 2) is True

    def test_at_cap(self):
        assert can_earn_bonus(2, 2) is False

    def test_zero_cap_disables_bonuses(self):
        assert can_earn_bonus(0, 0) is False

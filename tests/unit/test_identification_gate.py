"""Unit tests for the identification gate."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from plantgate.config import IdentificationConfig
from plantgate.exceptions import (
    ExternalServiceRateLimited,
    ExternalServiceUnavailable,
    IdentificationTimeout,
    NoPlantIdentified,
    TransientStorageFailure,
)
from plantgate.models.entitlements import (
    GateAllowed,
    GateDeniedFreeExhausted,
    PlanTier,
    Subject,
    SubscriptionActivation,
)
from plantgate.models.identification import IdentificationResult, ImageHandle
from plantgate.services.identification_gate import IdentificationGate

GUEST = Subject.guest()
ALICE = Subject.authenticated("alice")
IMAGE = ImageHandle(content=b"\xff\xd8fake-jpeg")


class SlowIdentifier:
    async def identify(self, image):
        await asyncio.sleep(10)


async def used_today(stack, subject) -> int:
    return (await stack.quota.get_snapshot(subject)).used_count


class TestTryIdentify:
    async def test_guest_day_with_bonus_and_rollover(self, stack):
        first = await stack.gate.try_identify(GUEST)
        assert isinstance(first, GateAllowed)
        await first.on_success()

        second = await stack.gate.try_identify(GUEST)
        assert isinstance(second, GateAllowed)
        await second.on_success()

        third = await stack.gate.try_identify(GUEST)
        assert isinstance(third, GateDeniedFreeExhausted)
        assert third.can_earn_bonus is True
        assert third.resets_at == datetime(2025, 6, 2, 0, 0, tzinfo=UTC)

        await stack.gate.record_earned_bonus(GUEST)
        fourth = await stack.gate.try_identify(GUEST)
        assert isinstance(fourth, GateAllowed)
        await fourth.on_success()

        await stack.gate.record_earned_bonus(GUEST)
        await stack.gate.record_earned_bonus(GUEST)
        fifth = await stack.gate.try_identify(GUEST)
        assert isinstance(fifth, GateAllowed)
        await fifth.on_success()

        sixth = await stack.gate.try_identify(GUEST)
        assert isinstance(sixth, GateDeniedFreeExhausted)
        assert sixth.can_earn_bonus is False

        stack.clock.advance(timedelta(days=1))
        next_day = await stack.gate.try_identify(GUEST)
        assert isinstance(next_day, GateAllowed)
        assert next_day.remaining == 2

    async def test_allowed_without_success_consumes_nothing(self, stack):
        decision = await stack.gate.try_identify(GUEST)

        assert isinstance(decision, GateAllowed)
        assert await used_today(stack, GUEST) == 0

    async def test_on_success_counts_once(self, stack):
        decision = await stack.gate.try_identify(GUEST)

        await decision.on_success()
        await decision.on_success()

        assert await used_today(stack, GUEST) == 1

    async def test_active_subscriber_is_never_blocked(self, stack):
        await stack.ledger.activate(
            SubscriptionActivation(user_id="alice", plan_tier=PlanTier.BASIC, payment_reference="pay_1")
        )

        for _ in range(12):
            decision = await stack.gate.try_identify(ALICE)
            assert isinstance(decision, GateAllowed)
            await decision.on_success()

        assert await used_today(stack, ALICE) == 12

    async def test_expired_subscriber_falls_back_to_free(self, stack):
        await stack.ledger.activate(
            SubscriptionActivation(user_id="alice", plan_tier=PlanTier.PREMIUM, payment_reference="pay_1")
        )
        stack.clock.advance(timedelta(days=40))

        for _ in range(2):
            await (await stack.gate.try_identify(ALICE)).on_success()

        assert isinstance(await stack.gate.try_identify(ALICE), GateDeniedFreeExhausted)

    async def test_storage_failure_raises_instead_of_allowing(self, stack, monkeypatch):
        async def offline(*_args, **_kwargs):
            raise ConnectionError("offline")

        monkeypatch.setattr(stack.store, "get_last_day", offline)

        with pytest.raises(TransientStorageFailure):
            await stack.gate.try_identify(GUEST)

    async def test_subscription_store_failure_without_cache_raises(self, stack, monkeypatch):
        async def offline(*_args, **_kwargs):
            raise ConnectionError("offline")

        monkeypatch.setattr(stack.subscriptions, "list_for_user", offline)

        with pytest.raises(TransientStorageFailure):
            await stack.gate.try_identify(ALICE)


class TestIdentify:
    async def test_success_counts_one_scan(self, stack, fake_identifier):
        outcome = await stack.gate.identify(GUEST, IMAGE, fake_identifier)

        assert isinstance(outcome.decision, GateAllowed)
        assert outcome.result.top.species_name == "Monstera deliciosa"
        assert await used_today(stack, GUEST) == 1

    async def test_denied_does_not_call_provider(self, stack, fake_identifier):
        for _ in range(2):
            await stack.gate.identify(GUEST, IMAGE, fake_identifier)

        outcome = await stack.gate.identify(GUEST, IMAGE, fake_identifier)

        assert isinstance(outcome.decision, GateDeniedFreeExhausted)
        assert outcome.result is None
        assert fake_identifier.calls == 2

    async def test_rate_limit_consumes_nothing(self, stack, fake_identifier):
        fake_identifier.error = ExternalServiceRateLimited("saturated")

        with pytest.raises(ExternalServiceRateLimited):
            await stack.gate.identify(GUEST, IMAGE, fake_identifier)

        assert await used_today(stack, GUEST) == 0

    async def test_provider_failure_consumes_nothing(self, stack, fake_identifier):
        fake_identifier.error = ExternalServiceUnavailable("down")

        with pytest.raises(ExternalServiceUnavailable):
            await stack.gate.identify(GUEST, IMAGE, fake_identifier)

        assert await used_today(stack, GUEST) == 0

    async def test_timeout_consumes_nothing(self, stack):
        stack.gate.config = IdentificationConfig(timeout_seconds=0.01)

        with pytest.raises(IdentificationTimeout):
            await stack.gate.identify(GUEST, IMAGE, SlowIdentifier())

        assert await used_today(stack, GUEST) == 0

    async def test_empty_result_consumes_nothing(self, stack, fake_identifier):
        fake_identifier.result = IdentificationResult(results=[])

        with pytest.raises(NoPlantIdentified):
            await stack.gate.identify(GUEST, IMAGE, fake_identifier)

        assert await used_today(stack, GUEST) == 0


class TestRemaining:
    async def test_guest_badge(self, stack):
        await (await stack.gate.try_identify(GUEST)).on_success()

        status = await stack.gate.remaining(GUEST)

        assert status.remaining == 1
        assert status.plan_tier == PlanTier.FREE
        assert status.stale is False

    async def test_subscription_outage_shows_stale_badge(self, stack, monkeypatch):
        await stack.ledger.activate(
            SubscriptionActivation(user_id="alice", plan_tier=PlanTier.BASIC, payment_reference="pay_1")
        )

        async def offline(*_args, **_kwargs):
            raise ConnectionError("offline")

        monkeypatch.setattr(stack.subscriptions, "list_for_user", offline)

        status = await stack.gate.remaining(ALICE)

        assert status.stale is True
        assert status.plan_tier == PlanTier.BASIC


class TestGardenCapacity:
    async def test_free_capacity(self, stack):
        allowance = await stack.gate.garden_capacity(GUEST, 2)

        assert allowance.allowed is True
        assert allowance.capacity == 3

    async def test_premium_capacity(self, stack):
        await stack.ledger.activate(
            SubscriptionActivation(user_id="alice", plan_tier=PlanTier.PREMIUM, payment_reference="pay_1")
        )

        allowance = await stack.gate.garden_capacity(ALICE, 10)

        assert allowance.capacity == 50
        assert allowance.remaining == 40


def test_gate_can_be_built_without_config(stack):
    gate = IdentificationGate(stack.quota, stack.ledger)

    assert gate.config.timeout_seconds == 30.0


class TestAbandon:
    async def test_abandoned_attempt_is_never_counted(self, stack):
        decision = await stack.gate.try_identify(GUEST)

        assert stack.gate.abandon(decision.attempt_id) is True
        await decision.on_success()

        assert await used_today(stack, GUEST) == 0

    async def test_abandon_after_confirm_is_rejected(self, stack):
        decision = await stack.gate.try_identify(GUEST)
        await decision.on_success()

        assert stack.gate.abandon(decision.attempt_id) is False
        assert await used_today(stack, GUEST) == 1

    async def test_abandon_unknown_attempt(self, stack):
        assert stack.gate.abandon("missing") is False

    async def test_abandon_twice(self, stack):
        decision = await stack.gate.try_identify(GUEST)

        assert stack.gate.abandon(decision.attempt_id) is True
        assert stack.gate.abandon(decision.attempt_id) is False

    async def test_failed_provider_call_abandons_attempt(self, stack, fake_identifier):
        fake_identifier.error = ExternalServiceUnavailable("down")

        with pytest.raises(ExternalServiceUnavailable):
            await stack.gate.identify(GUEST, IMAGE, fake_identifier)

        assert not any(attempt.pending for attempt in stack.gate._attempts.values())


class TestUncountedSuccess:
    async def test_result_survives_counter_write_failure(self, stack, fake_identifier, monkeypatch):
        async def offline(*_args, **_kwargs):
            raise ConnectionError("offline")

        monkeypatch.setattr(stack.store, "increment_used", offline)

        outcome = await stack.gate.identify(GUEST, IMAGE, fake_identifier)

        assert fake_identifier.calls == 1
        assert isinstance(outcome.decision, GateAllowed)
        assert outcome.result.top.species_name == "Monstera deliciosa"
        assert outcome.counted is False

    async def test_successful_identify_is_counted(self, stack, fake_identifier):
        outcome = await stack.gate.identify(GUEST, IMAGE, fake_identifier)

        assert outcome.counted is True

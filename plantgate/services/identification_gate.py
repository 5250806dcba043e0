"""
Single decision point in front of every plant identification.

Every attempt re-reads the subscription and today's counter; an earlier
"allowed" is never reused, because earned bonuses and the midnight rollover
can change the answer between attempts. Quota is consumed only when the
caller confirms a usable result through `on_success`; timeouts, provider
saturation and abandoned attempts consume nothing.
"""

import asyncio
import uuid
import weakref

import structlog
from pydantic import BaseModel

from plantgate.config import IdentificationConfig
from plantgate.exceptions import (
    ExternalServiceRateLimited,
    IdentificationTimeout,
    NoPlantIdentified,
    TransientStorageFailure,
)
from plantgate.models.entitlements import (
    AllowanceReason,
    BonusResult,
    GardenAllowance,
    GateAllowed,
    GateDecision,
    GateDeniedFreeExhausted,
    GateDeniedSubscriptionExhausted,
    PlanTier,
    QuotaStatus,
    Subject,
    SubscriptionStatus,
)
from plantgate.models.identification import IdentificationResult, ImageHandle
from plantgate.services.entitlement_policy import (
    can_earn_bonus,
    resolve_garden_capacity,
    resolve_scan_allowance,
)
from plantgate.services.plant_identifier import PlantIdentifier
from plantgate.services.quota_manager import QuotaManager
from plantgate.services.subscription_ledger import SubscriptionLedger

logger = structlog.get_logger(__name__)


class IdentificationAttempt:
    """Post-success bookkeeping for one allowed attempt. Confirms at most once."""

    def __init__(self, attempt_id: str, subject: Subject, quota: QuotaManager) -> None:
        self.attempt_id = attempt_id
        self.subject = subject
        self.quota = quota
        self.confirmed = False
        self.abandoned = False
        self._lock = asyncio.Lock()

    @property
    def pending(self) -> bool:
        return not (self.confirmed or self.abandoned)

    async def confirm(self) -> None:
        async with self._lock:
            if not self.pending:
                logger.debug(
                    "gate_attempt_not_pending",
                    attempt_id=self.attempt_id,
                    confirmed=self.confirmed,
                    abandoned=self.abandoned,
                )
                return
            await self.quota.record_identification(self.subject)
            self.confirmed = True


class GuardedIdentification(BaseModel):
    """Outcome of `IdentificationGate.identify`.

    `counted` is False when the provider succeeded but the scan could not be
    recorded; the result is still returned.
    """

    decision: GateDecision
    result: IdentificationResult | None = None
    counted: bool = False


class IdentificationGate:
    """Composes the ledger, the quota manager and the policy into one decision."""

    def __init__(
        self,
        quota: QuotaManager,
        ledger: SubscriptionLedger,
        config: IdentificationConfig | None = None,
    ) -> None:
        self.quota = quota
        self.ledger = ledger
        self.config = config or IdentificationConfig()
        # Held weakly: an attempt lives as long as its GateAllowed decision.
        self._attempts: weakref.WeakValueDictionary[str, IdentificationAttempt] = (
            weakref.WeakValueDictionary()
        )

    async def _plan_for(self, subject: Subject) -> tuple[PlanTier, SubscriptionStatus | None]:
        await self.ledger.refresh(subject)
        return self.ledger.current_tier(subject), self.ledger.current_status(subject)

    async def try_identify(self, subject: Subject) -> GateDecision:
        """Decide whether one identification may run now.

        Raises:
            TransientStorageFailure: A store could not be reached. Callers must
                treat this as a denial and show a retry-later message.
        """
        plan_tier, status = await self._plan_for(subject)
        snapshot = await self.quota.get_snapshot(subject, allow_stale=False)
        allowance = resolve_scan_allowance(
            plan_tier,
            status,
            snapshot.used_count,
            snapshot.bonus_count,
            self.quota.plans,
        )

        if allowance.allowed:
            attempt = IdentificationAttempt(str(uuid.uuid4()), subject, self.quota)
            self._attempts[attempt.attempt_id] = attempt
            logger.info(
                "gate_allowed",
                subject_key=subject.key,
                attempt_id=attempt.attempt_id,
                plan_tier=plan_tier.value,
                remaining=allowance.remaining,
            )
            return GateAllowed(
                attempt_id=attempt.attempt_id,
                plan_tier=plan_tier,
                remaining=allowance.remaining,
                limit=allowance.limit,
                on_success=attempt.confirm,
            )

        resets_at = self.quota.clock.next_reset()
        if allowance.reason == AllowanceReason.SUBSCRIPTION_ACTIVE:
            logger.info("gate_denied_subscription_exhausted", subject_key=subject.key)
            return GateDeniedSubscriptionExhausted(plan_tier=plan_tier, resets_at=resets_at)

        earnable = can_earn_bonus(snapshot.clicks_today, self.quota.config.daily_ad_cap)
        logger.info(
            "gate_denied_free_exhausted",
            subject_key=subject.key,
            used_count=snapshot.used_count,
            bonus_count=snapshot.bonus_count,
            can_earn_bonus=earnable,
        )
        return GateDeniedFreeExhausted(remaining=0, can_earn_bonus=earnable, resets_at=resets_at)

    async def identify(
        self,
        subject: Subject,
        image: ImageHandle,
        identifier: PlantIdentifier,
    ) -> GuardedIdentification:
        """Gate, call the provider under a timeout, and count only on success.

        Raises:
            TransientStorageFailure: Quota or subscription store unreachable
                while deciding. A failure to record a successful scan is
                logged and reported through `counted` instead.
            ExternalServiceRateLimited: Provider saturated; nothing consumed.
            ExternalServiceUnavailable: Provider failed or timed out; nothing consumed.
            NoPlantIdentified: Provider found no plant; nothing consumed.
        """
        decision = await self.try_identify(subject)
        if not isinstance(decision, GateAllowed):
            return GuardedIdentification(decision=decision)

        try:
            result = await self._call_provider(subject, decision, image, identifier)
        except BaseException:
            # Covers task cancellation too: the attempt is dropped uncounted.
            self.abandon(decision.attempt_id)
            raise

        try:
            await decision.on_success()
        except TransientStorageFailure:
            # The provider call already succeeded; keep its result even though
            # the scan goes uncounted.
            logger.error(
                "gate_success_not_recorded",
                subject_key=subject.key,
                attempt_id=decision.attempt_id,
            )
            return GuardedIdentification(decision=decision, result=result, counted=False)
        return GuardedIdentification(decision=decision, result=result, counted=True)

    async def _call_provider(
        self,
        subject: Subject,
        decision: GateAllowed,
        image: ImageHandle,
        identifier: PlantIdentifier,
    ) -> IdentificationResult:
        try:
            async with asyncio.timeout(self.config.timeout_seconds):
                result = await identifier.identify(image)
        except TimeoutError as exc:
            logger.warning(
                "gate_identification_timeout",
                subject_key=subject.key,
                attempt_id=decision.attempt_id,
                timeout=self.config.timeout_seconds,
            )
            raise IdentificationTimeout("Plant identification timed out") from exc
        except ExternalServiceRateLimited:
            logger.warning(
                "gate_provider_rate_limited",
                subject_key=subject.key,
                attempt_id=decision.attempt_id,
            )
            raise

        if not result.results:
            raise NoPlantIdentified("No plant identified. Please try a clearer photo.")
        return result

    def abandon(self, attempt_id: str) -> bool:
        """Drop a pending attempt without touching quota.

        A later `on_success` for that attempt becomes a no-op. Returns False
        when the attempt is unknown or no longer pending.
        """
        attempt = self._attempts.pop(attempt_id, None)
        if attempt is None or not attempt.pending:
            return False
        attempt.abandoned = True
        logger.info("gate_attempt_abandoned", subject_key=attempt.subject.key, attempt_id=attempt_id)
        return True

    async def remaining(self, subject: Subject) -> QuotaStatus:
        """Badge view. Falls back to cached or free-tier data on store failure."""
        try:
            await self.ledger.refresh(subject)
        except TransientStorageFailure:
            logger.warning("gate_remaining_subscription_unknown", subject_key=subject.key)
        status = await self.quota.get_remaining(
            subject,
            plan_tier=self.ledger.current_tier(subject),
            subscription_status=self.ledger.current_status(subject),
            allow_stale=True,
        )
        if self.ledger.is_stale(subject):
            status = status.model_copy(update={"stale": True})
        return status

    async def record_earned_bonus(self, subject: Subject) -> BonusResult:
        return await self.quota.record_earned_bonus(subject)

    async def garden_capacity(self, subject: Subject, current_size: int) -> GardenAllowance:
        plan_tier, _ = await self._plan_for(subject)
        return resolve_garden_capacity(plan_tier, current_size, self.quota.plans)

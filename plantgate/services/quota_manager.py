"""
Daily scan quota bookkeeping.

QuotaManager is the single source of truth for how many scans a subject used
today. It owns the midnight rollover (lazily on every read, and through an
optional periodic watch for long-lived sessions) and the increment-on-success
protocol. One instance is built per process and shared by reference.

The HTTP app never starts a watch: every request reads through the lazy
rollover path, which already sees the new day. `watch()` is for long-lived
sessions held by an embedding client.

Known limitation: two devices of the same user identifying within one
network round-trip may both read the pre-increment count and both be granted
a scan, so the effective limit can be exceeded by the number of racing
devices. Locks below only serialise callers inside this process. There is no
request-id deduplication either; the identification gate guarantees at most
one `record_identification` per successful identification.
"""

import asyncio
from collections import defaultdict
from collections.abc import Awaitable, Callable

import structlog

from plantgate.config import PlansConfig, QuotaConfig
from plantgate.exceptions import TransientStorageFailure
from plantgate.models.entitlements import (
    BonusResult,
    DailyCounter,
    PlanTier,
    QuotaSnapshot,
    QuotaStatus,
    ScanAllowance,
    Subject,
    SubscriptionStatus,
)
from plantgate.services.clock import Clock
from plantgate.services.counter_store import CounterStore
from plantgate.services.entitlement_policy import can_earn_bonus, resolve_scan_allowance

logger = structlog.get_logger(__name__)

RolloverListener = Callable[[QuotaSnapshot], Awaitable[None]]


class RolloverWatch:
    """Handle of a periodic rollover check; cancel it when the session ends."""

    def __init__(self, subject: Subject, task: asyncio.Task) -> None:
        self.subject = subject
        self.task = task

    @property
    def active(self) -> bool:
        return not self.task.done()

    def cancel(self) -> None:
        self.task.cancel()


class QuotaManager:
    """Reads, rolls over and increments daily counters."""

    def __init__(
        self,
        store: CounterStore,
        clock: Clock,
        config: QuotaConfig | None = None,
        plans: PlansConfig | None = None,
    ) -> None:
        self.store = store
        self.clock = clock
        self.config = config or QuotaConfig()
        self.plans = plans or PlansConfig()
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._last_reset: dict[str, str] = {}
        self._snapshots: dict[str, QuotaSnapshot] = {}
        self._watches: dict[str, RolloverWatch] = {}

    async def _current_day(self, subject: Subject) -> tuple[str, str | None]:
        """Return (effective day, stored last day).

        A clock that moved backwards never re-opens an earlier day: the later
        stored day stays in effect until real time catches up.
        """
        today = self.clock.day_key()
        last_day = await self.store.get_last_day(subject)
        if last_day is not None and last_day > today:
            logger.warning(
                "quota_clock_behind_last_day",
                subject_key=subject.key,
                clock_day=today,
                last_day=last_day,
            )
            return last_day, last_day
        return today, last_day

    async def _rolled_counter(self, subject: Subject) -> DailyCounter:
        day_key, last_day = await self._current_day(subject)
        if last_day != day_key:
            counter = await self.store.begin_day(subject, day_key)
            logger.info(
                "quota_rollover",
                subject_key=subject.key,
                previous_day=last_day,
                day_key=day_key,
            )
        else:
            counter = await self.store.get_counter(subject, day_key)
            if counter is None:
                counter = await self.store.begin_day(subject, day_key)
        self._last_reset[subject.key] = day_key
        return counter

    def _remember(self, counter: DailyCounter) -> QuotaSnapshot:
        snapshot = QuotaSnapshot(
            subject_key=counter.subject_key,
            day_key=counter.day_key,
            used_count=counter.used_count,
            bonus_count=counter.bonus_count,
            clicks_today=counter.clicks_today,
        )
        self._snapshots[counter.subject_key] = snapshot
        return snapshot

    def _stale_snapshot(self, subject: Subject) -> QuotaSnapshot | None:
        cached = self._snapshots.get(subject.key)
        if cached is None:
            return None
        today = self.clock.day_key()
        if today > cached.day_key:
            return QuotaSnapshot(subject_key=subject.key, day_key=today, stale=True)
        return cached.model_copy(update={"stale": True})

    async def get_snapshot(self, subject: Subject, *, allow_stale: bool = False) -> QuotaSnapshot:
        """Today's counter after rollover.

        With `allow_stale` a storage failure returns the last cached snapshot
        flagged `stale`; otherwise it raises TransientStorageFailure.
        """
        async with self._locks[subject.key]:
            try:
                counter = await self._rolled_counter(subject)
            except Exception as exc:
                logger.warning("quota_store_unreachable", subject_key=subject.key, error=str(exc))
                stale = self._stale_snapshot(subject) if allow_stale else None
                if stale is None:
                    raise TransientStorageFailure("Scan counter is unavailable") from exc
                return stale
            return self._remember(counter)

    async def get_remaining(
        self,
        subject: Subject,
        *,
        plan_tier: PlanTier = PlanTier.FREE,
        subscription_status: SubscriptionStatus | None = None,
        allow_stale: bool = True,
    ) -> QuotaStatus:
        """Display view of today's quota. May be stale, never used to allow."""
        snapshot = await self.get_snapshot(subject, allow_stale=allow_stale)
        allowance = resolve_scan_allowance(
            plan_tier,
            subscription_status,
            snapshot.used_count,
            snapshot.bonus_count,
            self.plans,
        )
        return QuotaStatus(
            plan_tier=plan_tier,
            subscription_active=subscription_status == SubscriptionStatus.ACTIVE
            and plan_tier != PlanTier.FREE,
            day_key=snapshot.day_key,
            remaining=allowance.remaining,
            used_count=snapshot.used_count,
            limit=allowance.limit,
            bonus_count=snapshot.bonus_count,
            can_earn_bonus=can_earn_bonus(snapshot.clicks_today, self.config.daily_ad_cap),
            stale=snapshot.stale,
        )

    async def can_identify(
        self,
        subject: Subject,
        *,
        plan_tier: PlanTier = PlanTier.FREE,
        subscription_status: SubscriptionStatus | None = None,
    ) -> ScanAllowance:
        """Allow/deny from fresh storage only. Raises TransientStorageFailure."""
        snapshot = await self.get_snapshot(subject, allow_stale=False)
        return resolve_scan_allowance(
            plan_tier,
            subscription_status,
            snapshot.used_count,
            snapshot.bonus_count,
            self.plans,
        )

    async def record_identification(self, subject: Subject) -> QuotaSnapshot:
        """Count one successful identification. Call only after success."""
        async with self._locks[subject.key]:
            try:
                counter = await self._rolled_counter(subject)
                counter = await self.store.increment_used(subject, counter.day_key)
            except Exception as exc:
                logger.error("quota_increment_failed", subject_key=subject.key, error=str(exc))
                raise TransientStorageFailure("Could not record the identification") from exc
            logger.info(
                "quota_identification_recorded",
                subject_key=subject.key,
                day_key=counter.day_key,
                used_count=counter.used_count,
            )
            return self._remember(counter)

    async def record_earned_bonus(self, subject: Subject) -> BonusResult:
        """Credit one fully-watched rewarded ad, up to the daily ad cap."""
        async with self._locks[subject.key]:
            try:
                counter = await self._rolled_counter(subject)
                counter, granted = await self.store.credit_bonus(
                    subject, counter.day_key, self.config.daily_ad_cap
                )
            except Exception as exc:
                logger.error("quota_bonus_failed", subject_key=subject.key, error=str(exc))
                raise TransientStorageFailure("Could not record the earned bonus") from exc
            if granted:
                logger.info(
                    "quota_bonus_granted",
                    subject_key=subject.key,
                    bonus_count=counter.bonus_count,
                    clicks_today=counter.clicks_today,
                )
            else:
                logger.info(
                    "quota_bonus_rejected_cap",
                    subject_key=subject.key,
                    clicks_today=counter.clicks_today,
                    cap=self.config.daily_ad_cap,
                )
            self._remember(counter)
            return BonusResult(
                granted=granted,
                bonus_count=counter.bonus_count,
                clicks_today=counter.clicks_today,
            )

    async def check_rollover(self, subject: Subject) -> QuotaSnapshot | None:
        """Run the rollover path if the day advanced past the last known reset.

        Returns the new snapshot when a rollover happened, else None.
        """
        known = self._last_reset.get(subject.key)
        if known is not None and self.clock.day_key() <= known:
            return None
        snapshot = await self.get_snapshot(subject)
        return snapshot if known is not None else None

    async def _watch_loop(
        self,
        subject: Subject,
        interval: float,
        on_rollover: RolloverListener | None,
    ) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                snapshot = await self.check_rollover(subject)
            except TransientStorageFailure:
                logger.warning("quota_rollover_check_failed", subject_key=subject.key)
                continue
            if snapshot is not None and on_rollover is not None:
                await on_rollover(snapshot)

    def watch(
        self,
        subject: Subject,
        *,
        on_rollover: RolloverListener | None = None,
        interval: float | None = None,
    ) -> RolloverWatch:
        """Start the periodic rollover check for a live session."""
        existing = self._watches.get(subject.key)
        if existing is not None and existing.active:
            return existing
        task = asyncio.create_task(
            self._watch_loop(
                subject,
                interval or self.config.rollover_check_interval_seconds,
                on_rollover,
            ),
            name=f"quota-rollover:{subject.key}",
        )
        watch = RolloverWatch(subject, task)
        self._watches[subject.key] = watch
        task.add_done_callback(lambda _t: self._forget_watch(watch))
        return watch

    def _forget_watch(self, watch: RolloverWatch) -> None:
        if self._watches.get(watch.subject.key) is watch:
            del self._watches[watch.subject.key]

    async def aclose(self) -> None:
        """Cancel every rollover watch owned by this manager."""
        watches = list(self._watches.values())
        for watch in watches:
            watch.cancel()
        await asyncio.gather(*(w.task for w in watches), return_exceptions=True)

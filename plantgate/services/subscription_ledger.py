"""Subscription records and the authoritative plan tier of a subject."""

import asyncio
import uuid
from collections import defaultdict
from datetime import UTC, datetime
from typing import Protocol

import structlog
from dateutil.relativedelta import relativedelta

from plantgate.config import SupabaseTables
from plantgate.exceptions import InvalidSubscriptionError, TransientStorageFailure
from plantgate.models.entitlements import (
    PAID_TIERS,
    BillingCycle,
    PlanTier,
    Subject,
    Subscription,
    SubscriptionActivation,
    SubscriptionStatus,
)

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def billing_period_end(start: datetime, cycle: BillingCycle) -> datetime:
    if cycle == BillingCycle.MONTHLY:
        return start + relativedelta(months=1)
    return start + relativedelta(years=1)


class SubscriptionRepository(Protocol):
    """Storage contract for subscription records."""

    async def list_for_user(self, user_id: str) -> list[Subscription]:
        """All records of a user, any status."""

    async def get_by_payment_reference(self, payment_reference: str) -> Subscription | None:
        """Record created by a given payment, if any."""

    async def insert(self, subscription: Subscription) -> Subscription:
        """Persist a new record."""

    async def update_status(
        self, subscription_id: str, status: SubscriptionStatus
    ) -> Subscription | None:
        """Change the stored status of a record."""


class InMemorySubscriptionRepository:
    """In-memory repository used for tests and local fallback."""

    def __init__(self) -> None:
        self.subscriptions: dict[str, Subscription] = {}

    async def list_for_user(self, user_id: str) -> list[Subscription]:
        return [
            s.model_copy(deep=True)
            for s in self.subscriptions.values()
            if s.user_id == user_id
        ]

    async def get_by_payment_reference(self, payment_reference: str) -> Subscription | None:
        for subscription in self.subscriptions.values():
            if subscription.payment_reference == payment_reference:
                return subscription.model_copy(deep=True)
        return None

    async def insert(self, subscription: Subscription) -> Subscription:
        stored = subscription.model_copy(deep=True)
        self.subscriptions[stored.id] = stored
        return stored.model_copy(deep=True)

    async def update_status(
        self, subscription_id: str, status: SubscriptionStatus
    ) -> Subscription | None:
        subscription = self.subscriptions.get(subscription_id)
        if subscription is None:
            return None
        subscription.status = status
        return subscription.model_copy(deep=True)


class SupabaseSubscriptionRepository:
    """Supabase-backed repository for subscription records."""

    def __init__(self, client, tables: SupabaseTables | None = None):
        self.client = client
        self.table = (tables or SupabaseTables()).subscriptions

    async def list_for_user(self, user_id: str) -> list[Subscription]:
        response = (
            await self.client.table(self.table)
            .select("*")
            .eq("user_id", user_id)
            .order("created_at", desc=True)
            .execute()
        )
        return [Subscription.model_validate(row) for row in response.data or []]

    async def get_by_payment_reference(self, payment_reference: str) -> Subscription | None:
        response = (
            await self.client.table(self.table)
            .select("*")
            .eq("payment_reference", payment_reference)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        if not rows:
            return None
        return Subscription.model_validate(rows[0])

    async def insert(self, subscription: Subscription) -> Subscription:
        payload = subscription.model_dump(mode="json")
        response = await self.client.table(self.table).insert(payload).execute()
        rows = response.data or []
        if not rows:
            return subscription
        return Subscription.model_validate(rows[0])

    async def update_status(
        self, subscription_id: str, status: SubscriptionStatus
    ) -> Subscription | None:
        response = (
            await self.client.table(self.table)
            .update({"status": status.value})
            .eq("id", subscription_id)
            .execute()
        )
        rows = response.data or []
        if not rows:
            return None
        return Subscription.model_validate(rows[0])


class SubscriptionLedger:
    """Resolves the current plan tier and status of each subject.

    The last known-good record is cached per subject. A failed refresh keeps
    that record (a paying user is not downgraded by a network error) and
    flags the subject as stale. Expiry is always re-derived from `end_date`.
    """

    def __init__(self, repository: SubscriptionRepository, now_provider=_utcnow) -> None:
        self.repository = repository
        self.now_provider = now_provider
        self._cache: dict[str, Subscription | None] = {}
        self._stale: set[str] = set()
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _authoritative(self, records: list[Subscription]) -> Subscription | None:
        """Newest record that is effectively active, else the newest record."""
        now = self.now_provider()
        ordered = sorted(records, key=lambda s: s.created_at, reverse=True)
        for record in ordered:
            if record.effective_status(now) == SubscriptionStatus.ACTIVE:
                return record
        return ordered[0] if ordered else None

    async def refresh(self, subject: Subject) -> Subscription | None:
        if subject.is_guest:
            return None

        try:
            records = await self.repository.list_for_user(subject.user_id)
        except Exception as exc:
            self._stale.add(subject.key)
            logger.warning(
                "subscription_refresh_failed",
                subject_key=subject.key,
                has_cached=subject.key in self._cache,
                error=str(exc),
            )
            if subject.key in self._cache:
                return self._cache[subject.key]
            raise TransientStorageFailure("Subscription store is unavailable") from exc

        subscription = self._authoritative(records)
        self._cache[subject.key] = subscription
        self._stale.discard(subject.key)
        return subscription

    def cached(self, subject: Subject) -> Subscription | None:
        return self._cache.get(subject.key)

    def is_stale(self, subject: Subject) -> bool:
        return subject.key in self._stale

    def current_status(self, subject: Subject) -> SubscriptionStatus | None:
        subscription = self.cached(subject)
        if subscription is None:
            return None
        return subscription.effective_status(self.now_provider())

    def is_active(self, subject: Subject) -> bool:
        subscription = self.cached(subject)
        if subscription is None or subscription.plan_tier not in PAID_TIERS:
            return False
        return subscription.effective_status(self.now_provider()) == SubscriptionStatus.ACTIVE

    def current_tier(self, subject: Subject) -> PlanTier:
        if not self.is_active(subject):
            return PlanTier.FREE
        return self.cached(subject).plan_tier

    async def activate(self, event: SubscriptionActivation) -> Subscription:
        """Create an active subscription for a successful payment.

        Replaying an event with a known payment reference returns the
        existing record instead of creating a second one.
        """
        if event.plan_tier not in PAID_TIERS:
            raise InvalidSubscriptionError("Only paid tiers can be activated")

        subject = Subject.authenticated(event.user_id)
        async with self._locks[subject.key]:
            try:
                existing = await self.repository.get_by_payment_reference(event.payment_reference)
            except Exception as exc:
                raise TransientStorageFailure("Subscription store is unavailable") from exc
            if existing is not None:
                logger.info(
                    "subscription_activation_replayed",
                    user_id=event.user_id,
                    payment_reference=event.payment_reference,
                    subscription_id=existing.id,
                )
                return existing

            now = self.now_provider()
            end_date = event.end_date or billing_period_end(now, event.billing_cycle)
            if end_date <= now:
                raise InvalidSubscriptionError("Subscription end date is in the past")

            subscription = Subscription(
                id=str(uuid.uuid4()),
                user_id=event.user_id,
                plan_tier=event.plan_tier,
                billing_cycle=event.billing_cycle,
                status=SubscriptionStatus.ACTIVE,
                start_date=now,
                end_date=end_date,
                payment_reference=event.payment_reference,
                created_at=now,
            )
            try:
                stored = await self.repository.insert(subscription)
            except Exception as exc:
                logger.error(
                    "subscription_insert_failed",
                    user_id=event.user_id,
                    payment_reference=event.payment_reference,
                    error=str(exc),
                )
                raise TransientStorageFailure("Could not store the subscription") from exc

            self._cache[subject.key] = stored
            self._stale.discard(subject.key)
            logger.info(
                "subscription_activated",
                user_id=event.user_id,
                plan_tier=stored.plan_tier.value,
                billing_cycle=stored.billing_cycle.value,
                end_date=stored.end_date.isoformat(),
            )
            return stored

    async def cancel(self, subject: Subject, subscription_id: str) -> Subscription:
        """Cancel a subscription. Terminal: later payments create new records."""
        if subject.is_guest:
            raise InvalidSubscriptionError("Guests have no subscriptions")

        async with self._locks[subject.key]:
            try:
                records = await self.repository.list_for_user(subject.user_id)
                target = next((s for s in records if s.id == subscription_id), None)
                if target is None:
                    raise InvalidSubscriptionError("Subscription not found")
                if target.status != SubscriptionStatus.CANCELLED:
                    target = await self.repository.update_status(
                        subscription_id, SubscriptionStatus.CANCELLED
                    ) or target.model_copy(update={"status": SubscriptionStatus.CANCELLED})
                    records = [target if s.id == subscription_id else s for s in records]
            except InvalidSubscriptionError:
                raise
            except Exception as exc:
                raise TransientStorageFailure("Subscription store is unavailable") from exc

            self._cache[subject.key] = self._authoritative(records)
            self._stale.discard(subject.key)
            logger.info("subscription_cancelled", subject_key=subject.key, subscription_id=subscription_id)
            return target

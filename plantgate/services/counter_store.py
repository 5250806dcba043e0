"""Daily counter storage: on-device for guests, Supabase for signed-in users."""

import asyncio
import json
from pathlib import Path
from typing import Protocol

import structlog

from plantgate.config import SupabaseTables
from plantgate.models.entitlements import DailyCounter, Subject

logger = structlog.get_logger(__name__)


class CounterStore(Protocol):
    """Storage contract for (subject, day) counters.

    Writes are increments. `begin_day` is the only reset-like write and is a
    compare-and-set: it creates the day's record only if absent and moves the
    subject's last-day marker forward only.
    """

    async def get_counter(self, subject: Subject, day_key: str) -> DailyCounter | None:
        """Fetch the counter of one day, if it exists."""

    async def get_last_day(self, subject: Subject) -> str | None:
        """Most recent day the subject was observed on."""

    async def begin_day(self, subject: Subject, day_key: str) -> DailyCounter:
        """Ensure a record for `day_key` exists and advance the last-day marker."""

    async def increment_used(self, subject: Subject, day_key: str) -> DailyCounter:
        """Add one consumed scan."""

    async def credit_bonus(
        self, subject: Subject, day_key: str, daily_cap: int
    ) -> tuple[DailyCounter, bool]:
        """Add one bonus and one ad click if clicks are below `daily_cap`.

        Returns the stored counter and whether the bonus was granted.
        """


def _empty(subject: Subject, day_key: str) -> DailyCounter:
    return DailyCounter(subject_key=subject.key, day_key=day_key)


class InMemoryCounterStore:
    """In-memory store used for tests and local fallback."""

    def __init__(self) -> None:
        self.counters: dict[tuple[str, str], DailyCounter] = {}
        self.last_days: dict[str, str] = {}

    async def get_counter(self, subject: Subject, day_key: str) -> DailyCounter | None:
        counter = self.counters.get((subject.key, day_key))
        return counter.model_copy(deep=True) if counter else None

    async def get_last_day(self, subject: Subject) -> str | None:
        return self.last_days.get(subject.key)

    async def begin_day(self, subject: Subject, day_key: str) -> DailyCounter:
        counter = self.counters.setdefault((subject.key, day_key), _empty(subject, day_key))
        marker = self.last_days.get(subject.key)
        if marker is None or day_key > marker:
            self.last_days[subject.key] = day_key
        return counter.model_copy(deep=True)

    async def increment_used(self, subject: Subject, day_key: str) -> DailyCounter:
        counter = self.counters.setdefault((subject.key, day_key), _empty(subject, day_key))
        counter.used_count += 1
        return counter.model_copy(deep=True)

    async def credit_bonus(
        self, subject: Subject, day_key: str, daily_cap: int
    ) -> tuple[DailyCounter, bool]:
        counter = self.counters.setdefault((subject.key, day_key), _empty(subject, day_key))
        if counter.clicks_today >= daily_cap:
            return counter.model_copy(deep=True), False
        counter.clicks_today += 1
        counter.bonus_count += 1
        return counter.model_copy(deep=True), True


class JsonFileCounterStore(InMemoryCounterStore):
    """On-device guest store persisted to a JSON file after every write."""

    def __init__(self, path: str | Path) -> None:
        super().__init__()
        self.path = Path(path)
        self._lock = asyncio.Lock()
        self._loaded = False

    def _read_file(self) -> dict:
        if not self.path.exists():
            return {}
        return json.loads(self.path.read_text(encoding="utf-8") or "{}")

    def _write_file(self, payload: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(payload, sort_keys=True), encoding="utf-8")
        tmp_path.replace(self.path)

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        data = await asyncio.to_thread(self._read_file)
        self.last_days = dict(data.get("last_days", {}))
        self.counters = {
            (row["subject_key"], row["day_key"]): DailyCounter.model_validate(row)
            for row in data.get("counters", [])
        }
        self._loaded = True
        logger.debug("guest_counters_loaded", path=str(self.path), records=len(self.counters))

    async def _flush(self) -> None:
        payload = {
            "last_days": self.last_days,
            "counters": [c.model_dump(mode="json") for c in self.counters.values()],
        }
        await asyncio.to_thread(self._write_file, payload)

    async def get_counter(self, subject: Subject, day_key: str) -> DailyCounter | None:
        async with self._lock:
            await self._ensure_loaded()
            return await super().get_counter(subject, day_key)

    async def get_last_day(self, subject: Subject) -> str | None:
        async with self._lock:
            await self._ensure_loaded()
            return await super().get_last_day(subject)

    async def begin_day(self, subject: Subject, day_key: str) -> DailyCounter:
        async with self._lock:
            await self._ensure_loaded()
            counter = await super().begin_day(subject, day_key)
            await self._flush()
            return counter

    async def increment_used(self, subject: Subject, day_key: str) -> DailyCounter:
        async with self._lock:
            await self._ensure_loaded()
            counter = await super().increment_used(subject, day_key)
            await self._flush()
            return counter

    async def credit_bonus(
        self, subject: Subject, day_key: str, daily_cap: int
    ) -> tuple[DailyCounter, bool]:
        async with self._lock:
            await self._ensure_loaded()
            counter, granted = await super().credit_bonus(subject, day_key, daily_cap)
            if granted:
                await self._flush()
            return counter, granted


class SupabaseCounterStore:
    """Supabase-backed store for authenticated users.

    Increments run inside SQL functions (see supabase/migrations) so that two
    devices writing at once add up instead of overwriting each other.
    """

    def __init__(self, client, tables: SupabaseTables | None = None):
        self.client = client
        self.tables = tables or SupabaseTables()

    @staticmethod
    def _single_row(response) -> dict | None:
        data = response.data
        if isinstance(data, list):
            return data[0] if data else None
        return data or None

    async def get_counter(self, subject: Subject, day_key: str) -> DailyCounter | None:
        response = (
            await self.client.table(self.tables.daily_counters)
            .select("*")
            .eq("subject_key", subject.key)
            .eq("day_key", day_key)
            .limit(1)
            .execute()
        )
        row = self._single_row(response)
        return DailyCounter.model_validate(row) if row else None

    async def get_last_day(self, subject: Subject) -> str | None:
        response = (
            await self.client.table(self.tables.counter_days)
            .select("last_day_key")
            .eq("subject_key", subject.key)
            .limit(1)
            .execute()
        )
        row = self._single_row(response)
        return row["last_day_key"] if row else None

    async def begin_day(self, subject: Subject, day_key: str) -> DailyCounter:
        response = await self.client.rpc(
            self.tables.begin_day_fn,
            {"p_subject_key": subject.key, "p_day_key": day_key},
        ).execute()
        row = self._single_row(response)
        return DailyCounter.model_validate(row) if row else _empty(subject, day_key)

    async def increment_used(self, subject: Subject, day_key: str) -> DailyCounter:
        response = await self.client.rpc(
            self.tables.increment_fn,
            {"p_subject_key": subject.key, "p_day_key": day_key},
        ).execute()
        row = self._single_row(response)
        if row is None:
            raise RuntimeError("increment_daily_counter returned no row")
        return DailyCounter.model_validate(row)

    async def credit_bonus(
        self, subject: Subject, day_key: str, daily_cap: int
    ) -> tuple[DailyCounter, bool]:
        response = await self.client.rpc(
            self.tables.bonus_fn,
            {"p_subject_key": subject.key, "p_day_key": day_key, "p_cap": daily_cap},
        ).execute()
        row = self._single_row(response)
        if row is None:
            raise RuntimeError("credit_daily_bonus returned no row")
        granted = bool(row.pop("granted", False))
        return DailyCounter.model_validate(row), granted


class SubjectRoutedCounterStore:
    """Sends guests to the on-device store and users to the remote store."""

    def __init__(self, guest_store: CounterStore, user_store: CounterStore) -> None:
        self.guest_store = guest_store
        self.user_store = user_store

    def _for(self, subject: Subject) -> CounterStore:
        return self.guest_store if subject.is_guest else self.user_store

    async def get_counter(self, subject: Subject, day_key: str) -> DailyCounter | None:
        return await self._for(subject).get_counter(subject, day_key)

    async def get_last_day(self, subject: Subject) -> str | None:
        return await self._for(subject).get_last_day(subject)

    async def begin_day(self, subject: Subject, day_key: str) -> DailyCounter:
        return await self._for(subject).begin_day(subject, day_key)

    async def increment_used(self, subject: Subject, day_key: str) -> DailyCounter:
        return await self._for(subject).increment_used(subject, day_key)

    async def credit_bonus(
        self, subject: Subject, day_key: str, daily_cap: int
    ) -> tuple[DailyCounter, bool]:
        return await self._for(subject).credit_bonus(subject, day_key, daily_cap)

"""
Scan history of successful identifications.

Only the newest `HistoryConfig.max_entries` records are kept per subject;
older ones are pruned on every write. The lifetime scan total is kept
separately and is never pruned.
"""

import asyncio
import uuid
from collections import defaultdict
from datetime import UTC, datetime
from typing import Protocol

import structlog

from plantgate.config import HistoryConfig, SupabaseTables
from plantgate.exceptions import TransientStorageFailure
from plantgate.models.entitlements import Subject
from plantgate.models.history import ScanHistory, ScanRecord
from plantgate.models.identification import IdentificationResult

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class HistoryRepository(Protocol):
    """Storage contract for scan history."""

    async def list_recent(self, owner_key: str, limit: int) -> list[ScanRecord]:
        """Newest records first."""

    async def add(self, record: ScanRecord) -> ScanRecord:
        """Persist a record."""

    async def remove(self, owner_key: str, record_id: str) -> bool:
        """Delete a record. Returns False when it did not exist."""

    async def prune(self, owner_key: str, keep: int) -> int:
        """Delete all but the newest `keep` records. Returns how many were removed."""

    async def increment_total(self, owner_key: str) -> int:
        """Add one to the lifetime scan total and return it."""

    async def get_total(self, owner_key: str) -> int:
        """Lifetime scan total, 0 when unknown."""


class InMemoryHistoryRepository:
    """In-memory repository used for tests and local fallback."""

    def __init__(self) -> None:
        self.records: dict[str, list[ScanRecord]] = defaultdict(list)
        self.totals: dict[str, int] = defaultdict(int)

    async def list_recent(self, owner_key: str, limit: int) -> list[ScanRecord]:
        return [r.model_copy() for r in self.records[owner_key][:limit]]

    async def add(self, record: ScanRecord) -> ScanRecord:
        self.records[record.owner_key].insert(0, record.model_copy())
        return record.model_copy()

    async def remove(self, owner_key: str, record_id: str) -> bool:
        records = self.records[owner_key]
        for index, record in enumerate(records):
            if record.id == record_id:
                del records[index]
                return True
        return False

    async def prune(self, owner_key: str, keep: int) -> int:
        records = self.records[owner_key]
        dropped = max(0, len(records) - keep)
        del records[keep:]
        return dropped

    async def increment_total(self, owner_key: str) -> int:
        self.totals[owner_key] += 1
        return self.totals[owner_key]

    async def get_total(self, owner_key: str) -> int:
        return self.totals.get(owner_key, 0)


class SupabaseHistoryRepository:
    """Supabase-backed repository for scan history."""

    def __init__(self, client, tables: SupabaseTables | None = None):
        self.client = client
        self.tables = tables or SupabaseTables()

    async def list_recent(self, owner_key: str, limit: int) -> list[ScanRecord]:
        response = (
            await self.client.table(self.tables.scan_history)
            .select("*")
            .eq("owner_key", owner_key)
            .order("scanned_at", desc=True)
            .limit(limit)
            .execute()
        )
        return [ScanRecord.model_validate(row) for row in response.data or []]

    async def add(self, record: ScanRecord) -> ScanRecord:
        response = (
            await self.client.table(self.tables.scan_history)
            .insert(record.model_dump(mode="json", exclude_none=True))
            .execute()
        )
        rows = response.data or []
        return ScanRecord.model_validate(rows[0]) if rows else record

    async def remove(self, owner_key: str, record_id: str) -> bool:
        response = (
            await self.client.table(self.tables.scan_history)
            .delete()
            .eq("owner_key", owner_key)
            .eq("id", record_id)
            .execute()
        )
        return bool(response.data)

    async def prune(self, owner_key: str, keep: int) -> int:
        response = (
            await self.client.table(self.tables.scan_history)
            .select("id")
            .eq("owner_key", owner_key)
            .order("scanned_at", desc=True)
            .range(keep, keep + 999)
            .execute()
        )
        stale_ids = [row["id"] for row in response.data or []]
        if not stale_ids:
            return 0
        await (
            self.client.table(self.tables.scan_history)
            .delete()
            .eq("owner_key", owner_key)
            .in_("id", stale_ids)
            .execute()
        )
        return len(stale_ids)

    async def increment_total(self, owner_key: str) -> int:
        response = await self.client.rpc(
            self.tables.scan_total_fn,
            {"p_owner_key": owner_key},
        ).execute()
        return int(response.data or 0)

    async def get_total(self, owner_key: str) -> int:
        response = (
            await self.client.table(self.tables.scan_stats)
            .select("total_scans")
            .eq("owner_key", owner_key)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        return int(rows[0]["total_scans"]) if rows else 0


class ScanHistoryService:
    """Records successful scans and serves the history tab."""

    def __init__(
        self,
        repository: HistoryRepository,
        config: HistoryConfig | None = None,
        now_provider=_utcnow,
    ):
        self.repository = repository
        self.config = config or HistoryConfig()
        self.now_provider = now_provider
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def record_scan(self, subject: Subject, result: IdentificationResult) -> ScanRecord | None:
        """Store the top match of a successful identification.

        Returns None when the result has no match to record.
        """
        top = result.top
        if top is None:
            return None
        record = ScanRecord(
            id=str(uuid.uuid4()),
            owner_key=subject.key,
            species_name=top.species_name,
            common_name=top.common_names[0] if top.common_names else None,
            family=top.family,
            confidence_score=top.confidence_score,
            scanned_at=self.now_provider(),
        )
        async with self._locks[subject.key]:
            try:
                stored = await self.repository.add(record)
                total = await self.repository.increment_total(subject.key)
                pruned = await self.repository.prune(subject.key, self.config.max_entries)
            except Exception as exc:
                raise TransientStorageFailure("Scan history is unavailable") from exc
        logger.info(
            "history_scan_recorded",
            subject_key=subject.key,
            record_id=stored.id,
            total_scans=total,
            pruned=pruned,
        )
        return stored

    async def list_history(self, subject: Subject) -> ScanHistory:
        try:
            items = await self.repository.list_recent(subject.key, self.config.max_entries)
            total = await self.repository.get_total(subject.key)
        except Exception as exc:
            raise TransientStorageFailure("Scan history is unavailable") from exc
        return ScanHistory(total_scans=total, items=items)

    async def remove_scan(self, subject: Subject, record_id: str) -> bool:
        try:
            removed = await self.repository.remove(subject.key, record_id)
        except Exception as exc:
            raise TransientStorageFailure("Scan history is unavailable") from exc
        if removed:
            logger.info("history_scan_removed", subject_key=subject.key, record_id=record_id)
        return removed

"""
Bounded garden collection. Capacity comes from the subject's plan tier.

Adds for one subject are serialised in-process, so the capacity check and
the insert cannot interleave. Adds from several processes or devices can
still race, as with the scan counters.
"""

import asyncio
import uuid
from collections import defaultdict
from datetime import UTC, datetime
from typing import Protocol

import structlog

from plantgate.config import SupabaseTables
from plantgate.exceptions import GardenCapacityExceeded, TransientStorageFailure
from plantgate.models.entitlements import Subject
from plantgate.models.garden import GardenPlant
from plantgate.services.identification_gate import IdentificationGate

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class GardenRepository(Protocol):
    """Storage contract for garden plants."""

    async def list_plants(self, owner_key: str) -> list[GardenPlant]:
        """All plants of an owner, oldest first."""

    async def add_plant(self, plant: GardenPlant) -> GardenPlant:
        """Persist a plant."""

    async def remove_plant(self, owner_key: str, plant_id: str) -> bool:
        """Delete a plant. Returns False when it did not exist."""


class InMemoryGardenRepository:
    """In-memory repository used for tests and local fallback."""

    def __init__(self) -> None:
        self.plants: dict[str, GardenPlant] = {}

    async def list_plants(self, owner_key: str) -> list[GardenPlant]:
        owned = [p for p in self.plants.values() if p.owner_key == owner_key]
        return sorted((p.model_copy() for p in owned), key=lambda p: p.added_at)

    async def add_plant(self, plant: GardenPlant) -> GardenPlant:
        self.plants[plant.id] = plant.model_copy()
        return plant.model_copy()

    async def remove_plant(self, owner_key: str, plant_id: str) -> bool:
        plant = self.plants.get(plant_id)
        if plant is None or plant.owner_key != owner_key:
            return False
        del self.plants[plant_id]
        return True


class SupabaseGardenRepository:
    """Supabase-backed repository for garden plants."""

    def __init__(self, client, tables: SupabaseTables | None = None):
        self.client = client
        self.table = (tables or SupabaseTables()).garden_plants

    async def list_plants(self, owner_key: str) -> list[GardenPlant]:
        response = (
            await self.client.table(self.table)
            .select("*")
            .eq("owner_key", owner_key)
            .order("added_at")
            .execute()
        )
        return [GardenPlant.model_validate(row) for row in response.data or []]

    async def add_plant(self, plant: GardenPlant) -> GardenPlant:
        response = (
            await self.client.table(self.table)
            .insert(plant.model_dump(mode="json", exclude_none=True))
            .execute()
        )
        rows = response.data or []
        return GardenPlant.model_validate(rows[0]) if rows else plant

    async def remove_plant(self, owner_key: str, plant_id: str) -> bool:
        response = (
            await self.client.table(self.table)
            .delete()
            .eq("owner_key", owner_key)
            .eq("id", plant_id)
            .execute()
        )
        return bool(response.data)


class GardenService:
    """Adds and removes garden plants within the plan's capacity."""

    def __init__(self, repository: GardenRepository, gate: IdentificationGate, now_provider=_utcnow):
        self.repository = repository
        self.gate = gate
        self.now_provider = now_provider
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def list_plants(self, subject: Subject) -> list[GardenPlant]:
        try:
            return await self.repository.list_plants(subject.key)
        except Exception as exc:
            raise TransientStorageFailure("Garden store is unavailable") from exc

    async def add_plant(
        self,
        subject: Subject,
        species_name: str,
        common_name: str | None = None,
        confidence_score: float | None = None,
    ) -> GardenPlant:
        async with self._locks[subject.key]:
            plants = await self.list_plants(subject)
            allowance = await self.gate.garden_capacity(subject, len(plants))
            if not allowance.allowed:
                logger.info(
                    "garden_capacity_reached",
                    subject_key=subject.key,
                    capacity=allowance.capacity,
                )
                raise GardenCapacityExceeded(allowance.capacity)

            plant = GardenPlant(
                id=str(uuid.uuid4()),
                owner_key=subject.key,
                species_name=species_name,
                common_name=common_name,
                confidence_score=confidence_score,
                added_at=self.now_provider(),
            )
            try:
                stored = await self.repository.add_plant(plant)
            except Exception as exc:
                raise TransientStorageFailure("Garden store is unavailable") from exc
        logger.info("garden_plant_added", subject_key=subject.key, plant_id=stored.id)
        return stored

    async def remove_plant(self, subject: Subject, plant_id: str) -> bool:
        try:
            removed = await self.repository.remove_plant(subject.key, plant_id)
        except Exception as exc:
            raise TransientStorageFailure("Garden store is unavailable") from exc
        if removed:
            logger.info("garden_plant_removed", subject_key=subject.key, plant_id=plant_id)
        return removed

"""
Shared test fixtures for the PlantGate test suite.
"""

from datetime import UTC, datetime, timedelta
from types import SimpleNamespace

import pytest
import structlog
from fastapi.testclient import TestClient

from plantgate.config import IdentificationConfig, PlansConfig, QuotaConfig
from plantgate.models.identification import IdentificationResult, ImageHandle, SpeciesMatch
from plantgate.services.clock import SystemClock
from plantgate.services.counter_store import InMemoryCounterStore
from plantgate.services.garden_service import GardenService, InMemoryGardenRepository
from plantgate.services.identification_gate import IdentificationGate
from plantgate.services.quota_manager import QuotaManager
from plantgate.services.scan_history import InMemoryHistoryRepository, ScanHistoryService
from plantgate.services.subscription_ledger import (
    InMemorySubscriptionRepository,
    SubscriptionLedger,
)

WEBHOOK_SECRET = "test-webhook-secret"


class MutableClock:
    """Deterministic clock helper for tests."""

    def __init__(self, now: datetime, timezone_name: str = "UTC"):
        self._now = now
        self._system = SystemClock(timezone_name, now_provider=self.now)

    def now(self) -> datetime:
        return self._now

    def day_key(self) -> str:
        return self._system.day_key()

    def next_reset(self) -> datetime:
        return self._system.next_reset()

    def advance(self, delta: timedelta) -> None:
        self._now += delta

    def set(self, now: datetime) -> None:
        self._now = now


class FakeIdentifier:
    """Plant identifier double. Raises `error` when set, else returns `result`."""

    def __init__(self, result: IdentificationResult | None = None, error: Exception | None = None):
        self.result = result or IdentificationResult(
            results=[
                SpeciesMatch(
                    species_name="Monstera deliciosa",
                    common_names=["Swiss cheese plant"],
                    family="Araceae",
                    genus="Monstera",
                    confidence_score=0.91,
                )
            ],
            best_match="Monstera deliciosa Liebm.",
        )
        self.error = error
        self.calls = 0

    async def identify(self, image: ImageHandle) -> IdentificationResult:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture(autouse=True)
def _set_test_env(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    """Set environment variables for tests so Settings never reach real services."""
    monkeypatch.setenv("PLANTNET_API_KEY", "")
    monkeypatch.setenv("SUPABASE_URL", "")
    monkeypatch.setenv("SUPABASE_SECRET_KEY", "")
    monkeypatch.setenv("PAYMENT_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setenv("QUOTA__GUEST_STORE_PATH", str(tmp_path / "guest_counters.json"))


@pytest.fixture(autouse=True)
def _configure_structlog_for_tests():
    """Configure structlog for tests using a simple, deterministic setup."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(0),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


@pytest.fixture
def clock() -> MutableClock:
    """Clock frozen at noon UTC on 2025-06-01."""
    return MutableClock(datetime(2025, 6, 1, 12, 0, tzinfo=UTC))


@pytest.fixture
def stack(clock: MutableClock) -> SimpleNamespace:
    """Fully wired in-memory services sharing one clock."""
    store = InMemoryCounterStore()
    repository = InMemorySubscriptionRepository()
    quota = QuotaManager(store, clock, QuotaConfig(), PlansConfig())
    ledger = SubscriptionLedger(repository, now_provider=clock.now)
    gate = IdentificationGate(quota, ledger, IdentificationConfig(timeout_seconds=1.0))
    garden_repository = InMemoryGardenRepository()
    garden = GardenService(garden_repository, gate, now_provider=clock.now)
    history_repository = InMemoryHistoryRepository()
    history = ScanHistoryService(history_repository, now_provider=clock.now)
    return SimpleNamespace(
        clock=clock,
        store=store,
        subscriptions=repository,
        quota=quota,
        ledger=ledger,
        gate=gate,
        garden_repository=garden_repository,
        garden=garden,
        history_repository=history_repository,
        history=history,
    )


@pytest.fixture
def fake_identifier() -> FakeIdentifier:
    return FakeIdentifier()


@pytest.fixture
def client():
    """FastAPI TestClient wrapping the main application."""
    # Clear the lru_cache so settings pick up test env vars
    from plantgate.config import get_settings

    get_settings.cache_clear()

    from plantgate.main import app

    yield TestClient(app)

    app.dependency_overrides.clear()
    for name in (
        "quota_manager",
        "subscription_ledger",
        "identification_gate",
        "plant_identifier",
        "garden_service",
        "scan_history",
        "supabase",
    ):
        if hasattr(app.state, name):
            delattr(app.state, name)


@pytest.fixture
def api(client: TestClient, stack: SimpleNamespace, fake_identifier: FakeIdentifier) -> SimpleNamespace:
    """TestClient with in-memory services installed on app.state."""
    client.app.state.quota_manager = stack.quota
    client.app.state.subscription_ledger = stack.ledger
    client.app.state.identification_gate = stack.gate
    client.app.state.plant_identifier = fake_identifier
    client.app.state.garden_service = stack.garden
    client.app.state.scan_history = stack.history
    return SimpleNamespace(client=client, stack=stack, identifier=fake_identifier)

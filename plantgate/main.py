"""
PlantGate - Main FastAPI Application.

Entitlement and quota engine in front of plant identification: daily scan
quotas with rewarded-ad bonuses, paid subscriptions, the identification
gate, the bounded garden collection and the scan history.

Run with:
    uvicorn plantgate.main:app --reload
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from supabase import acreate_client
from supabase._async.client import AsyncClient as AsyncSupabaseClient

from plantgate.api.v1.garden import router as garden_router
from plantgate.api.v1.history import router as history_router
from plantgate.api.v1.identify import router as identify_router
from plantgate.api.v1.quota import router as quota_router
from plantgate.api.v1.subscription import router as subscription_router
from plantgate.config import Settings, get_settings
from plantgate.constants import API_TITLE, API_VERSION
from plantgate.logging_config import setup_logging
from plantgate.middleware import RequestContextMiddleware
from plantgate.services.clock import SystemClock
from plantgate.services.counter_store import (
    InMemoryCounterStore,
    JsonFileCounterStore,
    SubjectRoutedCounterStore,
    SupabaseCounterStore,
)
from plantgate.services.garden_service import (
    GardenService,
    InMemoryGardenRepository,
    SupabaseGardenRepository,
)
from plantgate.services.identification_gate import IdentificationGate
from plantgate.services.plant_identifier import PlantNetIdentifier
from plantgate.services.quota_manager import QuotaManager
from plantgate.services.scan_history import (
    InMemoryHistoryRepository,
    ScanHistoryService,
    SupabaseHistoryRepository,
)
from plantgate.services.subscription_ledger import (
    InMemorySubscriptionRepository,
    SubscriptionLedger,
    SupabaseSubscriptionRepository,
)

# Get settings before logging setup so we know the debug flag
settings = get_settings()

# Configure logging
setup_logging(settings.debug)

logger = structlog.get_logger(__name__)


def build_services(
    settings: Settings,
    supabase_client: AsyncSupabaseClient | None,
) -> dict:
    """Wire every service once. Returned objects are stored on app.state."""
    settings.plans.validate_tiers()
    clock = SystemClock(settings.quota.timezone)

    guest_store = JsonFileCounterStore(settings.quota.guest_store_path)
    if supabase_client is not None:
        user_store = SupabaseCounterStore(supabase_client, settings.supabase_tables)
        subscriptions = SupabaseSubscriptionRepository(supabase_client, settings.supabase_tables)
        garden = SupabaseGardenRepository(supabase_client, settings.supabase_tables)
        history = SupabaseHistoryRepository(supabase_client, settings.supabase_tables)
    else:
        logger.warning("entitlement_store_in_memory", detail="Counters and subscriptions are not persisted")
        user_store = InMemoryCounterStore()
        subscriptions = InMemorySubscriptionRepository()
        garden = InMemoryGardenRepository()
        history = InMemoryHistoryRepository()

    quota = QuotaManager(
        SubjectRoutedCounterStore(guest_store, user_store),
        clock,
        settings.quota,
        settings.plans,
    )
    ledger = SubscriptionLedger(subscriptions, now_provider=clock.now)
    gate = IdentificationGate(quota, ledger, settings.identification)

    identifier = None
    if settings.plantnet_api_key:
        identifier = PlantNetIdentifier(settings.plantnet_api_key, settings.identification)
        logger.info("plantnet_configured")
    else:
        logger.warning("plantnet_key_missing", detail="Identification endpoint will return 503")

    if not settings.payment_webhook_secret:
        logger.warning("payment_webhook_secret_missing", detail="Subscription activation disabled")

    return {
        "quota_manager": quota,
        "subscription_ledger": ledger,
        "identification_gate": gate,
        "plant_identifier": identifier,
        "garden_service": GardenService(garden, gate, now_provider=clock.now),
        "scan_history": ScanHistoryService(history, settings.history, now_provider=clock.now),
    }


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Lifespan event handler for startup and shutdown."""
    logger.info("api_startup", cors_origins=settings.cors_origins, timezone=settings.quota.timezone)

    # Initialize Supabase async client
    supabase_client: AsyncSupabaseClient | None = None
    if settings.supabase_url and settings.supabase_secret_key:
        try:
            supabase_client = await acreate_client(
                settings.supabase_url,
                settings.supabase_secret_key,
            )
            logger.info("supabase_configured")
        except Exception as e:
            logger.warning("supabase_init_failed", error=str(e))
    else:
        logger.warning("supabase_not_configured", detail="Signed-in users will get 503")

    _app.state.supabase = supabase_client

    services = build_services(settings, supabase_client)
    for name, service in services.items():
        setattr(_app.state, name, service)

    logger.info("services_initialized")

    yield

    await services["quota_manager"].aclose()
    if services["plant_identifier"] is not None:
        await services["plant_identifier"].close()
    logger.info("api_shutdown")


# Create FastAPI app
app = FastAPI(
    title=API_TITLE,
    description=(
        "Entitlement and quota engine for plant identification: daily scan "
        "quotas, rewarded-ad bonuses, subscriptions and garden capacity."
    ),
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Request context middleware must come before CORS so every response gets
# the X-Request-ID header (including preflight OPTIONS responses).
app.add_middleware(RequestContextMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Include routers
app.include_router(quota_router, prefix="/api/v1")
app.include_router(identify_router, prefix="/api/v1")
app.include_router(subscription_router, prefix="/api/v1")
app.include_router(garden_router, prefix="/api/v1")
app.include_router(history_router, prefix="/api/v1")


@app.get("/")
async def root() -> dict:
    """Root endpoint with API info."""
    return {
        "name": API_TITLE,
        "version": API_VERSION,
        "description": "Scan quotas, subscriptions and garden capacity for plant identification",
        "docs": "/docs",
    }


@app.get("/health")
async def health() -> dict:
    """Health check endpoint."""
    return {"status": "healthy"}

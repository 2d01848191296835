"""
tokengate - Main FastAPI Application.

Meters tokens for paid feature calls, enforces per-identity rate limits and
gates features by subscription plan.

Run with:
    uvicorn tokengate.main:app --reload
"""

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from supabase import acreate_client
from supabase._async.client import AsyncClient as AsyncSupabaseClient

from tokengate.api.v1.features import router as features_router
from tokengate.api.v1.jobs import router as jobs_router
from tokengate.api.v1.tokens import router as tokens_router
from tokengate.api.v1.voice import router as voice_router
from tokengate.auth import StaticPlanResolver, SupabasePlanResolver
from tokengate.config import Settings, get_settings
from tokengate.constants import API_TITLE, API_VERSION
from tokengate.errors import UpstreamFailure, register_error_handlers
from tokengate.logging_config import setup_logging
from tokengate.middleware import RequestContextMiddleware
from tokengate.services.entitlements import (
    FeatureEntitlementResolver,
    FeatureFlagSnapshot,
    InMemoryFeatureFlagSource,
    SupabaseFeatureFlagSource,
)
from tokengate.services.plan_catalog import PlanCatalog
from tokengate.services.rate_limiter import InMemoryRateLimitStore, RateLimiter, SupabaseRateLimitStore
from tokengate.services.token_ledger import (
    InMemoryTokenLedgerRepository,
    SupabaseTokenLedgerRepository,
    TokenLedger,
)
from tokengate.services.usage_history import (
    InMemoryTokenUsageHistoryRepository,
    SupabaseTokenUsageHistoryRepository,
)
from tokengate.services.voice_usage import (
    InMemoryVoiceUsageRepository,
    MonthlyVoiceUsageJob,
    SupabaseVoiceUsageRepository,
    VoiceUsageService,
)

# Get settings before logging setup so we know the debug flag
settings = get_settings()

# Configure logging
setup_logging(settings.debug)

logger = structlog.get_logger(__name__)


def build_services(app: FastAPI, settings: Settings, supabase_client: AsyncSupabaseClient | None) -> None:
    """Create every service once and store it on ``app.state``.

    Without a Supabase client the in-memory stores are used.
    """
    timeout = settings.store.timeout_seconds
    catalog = PlanCatalog(settings.plans)

    if supabase_client is not None:
        ledger_repository = SupabaseTokenLedgerRepository(supabase_client)
        usage_history = SupabaseTokenUsageHistoryRepository(
            supabase_client, settings.store.token_usage_table
        )
        rate_limit_store = SupabaseRateLimitStore(supabase_client)
        flag_source = SupabaseFeatureFlagSource(supabase_client, settings.store.feature_flags_table)
        voice_repository = SupabaseVoiceUsageRepository(
            supabase_client,
            settings.store.voice_usage_table,
            settings.store.voice_archive_table,
        )
        plan_resolver = SupabasePlanResolver(
            supabase_client, settings.store.subscriptions_table, store_timeout=timeout
        )
    else:
        ledger_repository = InMemoryTokenLedgerRepository()
        usage_history = InMemoryTokenUsageHistoryRepository()
        rate_limit_store = InMemoryRateLimitStore()
        flag_source = InMemoryFeatureFlagSource()
        voice_repository = InMemoryVoiceUsageRepository()
        plan_resolver = StaticPlanResolver()

    snapshot = FeatureFlagSnapshot(flag_source, store_timeout=timeout)

    app.state.plan_catalog = catalog
    app.state.plan_resolver = plan_resolver
    app.state.feature_flags = snapshot
    app.state.token_ledger = TokenLedger(
        ledger_repository,
        catalog,
        settings.tokens,
        history=usage_history,
        store_timeout=timeout,
    )
    app.state.rate_limiter = RateLimiter(rate_limit_store, settings.rate_limit, store_timeout=timeout)
    app.state.entitlement_resolver = FeatureEntitlementResolver(snapshot, catalog)
    app.state.voice_usage_service = VoiceUsageService(voice_repository, catalog, store_timeout=timeout)
    app.state.monthly_voice_job = MonthlyVoiceUsageJob(
        voice_repository, settings.voice_usage, store_timeout=timeout
    )


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Lifespan event handler for startup and shutdown."""
    logger.info("api_startup", cors_origins=settings.cors_origins)

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
        logger.warning("supabase_not_configured", detail="Using in-memory stores")

    _app.state.supabase = supabase_client
    build_services(_app, settings, supabase_client)

    snapshot: FeatureFlagSnapshot = _app.state.feature_flags
    try:
        await snapshot.refresh()
    except UpstreamFailure as e:
        logger.warning("feature_flags_initial_load_failed", error=e.message)
    refresh_task = asyncio.create_task(snapshot.refresh_forever(settings.feature_flag_refresh_seconds))

    logger.info("services_initialized")

    yield

    refresh_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await refresh_task
    logger.info("api_shutdown")


# Create FastAPI app
app = FastAPI(
    title=API_TITLE,
    description=(
        "Token metering, per-identity rate limiting and plan-based feature "
        "entitlements for paid feature calls."
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

register_error_handlers(app)

# Include routers
app.include_router(tokens_router, prefix="/api/v1")
app.include_router(features_router, prefix="/api/v1")
app.include_router(voice_router, prefix="/api/v1")
app.include_router(jobs_router, prefix="/api/v1")


@app.get("/")
async def root() -> dict:
    """Root endpoint with API info."""
    return {
        "name": API_TITLE,
        "version": API_VERSION,
        "description": "Token metering and feature entitlements",
        "docs": "/docs",
    }


@app.get("/health")
async def health() -> dict:
    """Health check endpoint."""
    return {"status": "healthy"}

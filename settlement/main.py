# settlement/main.py

import logging
from contextlib import asynccontextmanager
from fastapi.middleware.cors import CORSMiddleware
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse
from apscheduler.schedulers.asyncio import AsyncIOScheduler

# Config and core
from settlement.core.config import settings as config
from settlement.core.logging_config import setup_logging
from settlement.core.rate_limit import RateLimiterGuard
from settlement.core.redis import acquire_worker_lock, redis_client, release_worker_lock

# FastAPI routers
from settlement.routers import admin as admin_router, affiliate, currency, orders, vcash
from settlement.routers.webhooks import payments_router

# Background services
from settlement.clients.fx_provider import FxProviderClient
from settlement.services.fraud import velocity_review_task
from settlement.services.rates import RateStore

# --- Init ---
logger = logging.getLogger(__name__)
scheduler = AsyncIOScheduler()

# --- Critical error handler ---
async def unhandled_exception_handler(request: Request, exc: Exception):
    """
    Global handler for every unhandled exception.
    Logs the traceback; the client only gets a generic 500.
    """
    logger.critical(f"Unhandled exception for request: {request.method} {request.url}", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal Server Error."},
    )

# --- Lifespan manager ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger.info("Application lifespan startup...")

    # Every worker keeps its own FX snapshot and counter client
    app.state.rate_limiter = RateLimiterGuard(config.LIMITS_STORAGE_URI)
    rate_store = RateStore(
        provider=FxProviderClient(config.FX_PROVIDER_URL, timeout_seconds=config.FX_TIMEOUT_SECONDS),
        base_currency=config.FX_BASE_CURRENCY,
        supported_currencies=config.FX_SUPPORTED_CURRENCIES,
        refresh_interval_seconds=config.FX_REFRESH_INTERVAL_SECONDS,
        redis=redis_client,
    )
    await rate_store.start(scheduler)
    app.state.rate_store = rate_store

    # Redis lock so cluster-wide jobs run in one worker only
    is_main_worker = await acquire_worker_lock()

    if is_main_worker:
        logger.info("This is the main worker. Scheduling cluster-wide jobs...")
        scheduler.add_job(
            velocity_review_task, 'interval', minutes=config.FRAUD_WINDOW_MINUTES,
            id="affiliate_velocity_review", replace_existing=True,
        )
    else:
        logger.info("This is a secondary worker. Skipping cluster-wide jobs.")

    if not scheduler.running:
        scheduler.start()
        logger.info("Scheduler started with background jobs.")

    yield

    # Shutdown
    await rate_store.stop()
    if scheduler.running:
        scheduler.shutdown()
        logger.info("Scheduler shut down.")

    if is_main_worker:
        logger.info("Main worker shutting down...")
        await release_worker_lock()
    else:
        logger.info("Secondary worker shutting down.")

# --- FastAPI app ---
app = FastAPI(
    title="Settlement Service",
    description="Pricing, V-Cash wallet and affiliate commission settlement for the connectivity-plan marketplace",
    version="0.1.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Exception handlers ---
app.add_exception_handler(Exception, unhandled_exception_handler)

# --- FastAPI routers ---
api_router = APIRouter(prefix="/api/v1")

# User-facing endpoints
api_router.include_router(orders.router, tags=["Orders"])
api_router.include_router(vcash.router, tags=["V-Cash"])
api_router.include_router(affiliate.router, tags=["Affiliate"])
api_router.include_router(currency.router, tags=["Currency"])

# Admin endpoints
api_router.include_router(admin_router.router, prefix="/admin", tags=["Admin"])

app.include_router(api_router)

# Webhooks (outside the API prefix)
app.include_router(payments_router, prefix="/webhooks", tags=["Webhooks"])

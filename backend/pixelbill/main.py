"""FastAPI application entry point"""
import asyncio
import logging
from contextlib import asynccontextmanager

import redis
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from pixelbill import __version__
from pixelbill.core.config import settings
from pixelbill.core.logging import setup_logging
from pixelbill.core.otel import initialize_otel, instrument_fastapi, instrument_sqlalchemy, setup_otel_logging
from pixelbill.db.redis import get_redis_client
from pixelbill.db.session import engine, init_db

# Import routers
from pixelbill.api import billing, credits, monitoring, webhooks

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup
    if initialize_otel():
        if setup_otel_logging():
            logger.info(f"OpenTelemetry fully initialized, exporting to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
        else:
            logger.warning("OpenTelemetry metrics/traces initialized but logging setup failed")
    else:
        logger.info("OpenTelemetry not configured - running without distributed tracing")

    logger.info("Initializing database...")
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    # Redis only backs the dashboard cache; the service runs without it
    logger.info("Testing Redis connection...")
    try:
        get_redis_client().ping()
        logger.info("Redis connection successful")
    except redis.RedisError as e:
        logger.warning(f"Redis connection failed, dashboard cache disabled until it recovers: {e}")

    instrument_sqlalchemy(engine)

    sweep_task = None
    if settings.EXPIRY_SWEEP_ENABLED:
        from pixelbill.tasks.expiry_sweep import expiry_sweep_task
        sweep_task = asyncio.create_task(expiry_sweep_task())
        logger.info(f"Expiry sweep task started (every {settings.EXPIRY_SWEEP_INTERVAL}s)")

    yield

    # Shutdown
    logger.info("Shutting down...")
    if sweep_task is not None:
        sweep_task.cancel()


# Create FastAPI app
app = FastAPI(
    title="PixelBill Backend",
    description="Subscription and credit synchronization between Stripe, Clerk and the local store",
    version=__version__,
    lifespan=lifespan
)

instrument_fastapi(app)

# CORS middleware
allowed_origins = [settings.BASE_URL]
if settings.ENVIRONMENT == "development":
    allowed_origins.extend(["http://localhost:3000", "http://127.0.0.1:3000"])

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(webhooks.router)
app.include_router(billing.router)
app.include_router(credits.router)
app.include_router(monitoring.router)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"}
    )

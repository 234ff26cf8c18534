"""
FastAPI application entry point.
Sets up the API with lifespan events for database initialization and
service wiring.
"""
import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from filedrop.config import settings
from filedrop.database import AsyncSessionLocal, init_db
from filedrop.api.router import api_router
from filedrop.exceptions import FileDropError
from filedrop.middleware.metrics_middleware import MetricsMiddleware
from filedrop.services import build_services
from filedrop.utils.logging import configure_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup/shutdown events.
    - Startup: initialize database, build services, start the token
      sweeper and re-queue stale pending webhook deliveries
    - Shutdown: stop the sweeper and delivery scheduler, close HTTP client
    """
    # Configure structured JSON logging
    configure_logging('filedrop-api', settings.log_level)

    # Startup
    await init_db()

    # Services may be injected ahead of startup (tests)
    if getattr(app.state, "services", None) is None:
        app.state.services = build_services(settings, AsyncSessionLocal)
    services = app.state.services

    sweeper = asyncio.create_task(
        services.upload_tokens.run_sweeper(settings.upload_token_sweep_interval)
    )

    try:
        requeued = await services.webhooks.reconcile_pending(settings.webhook_reconcile_after_seconds)
        if requeued:
            logger.info(f"Re-queued {requeued} pending webhook deliveries")
    except Exception as e:
        # Deliveries stay pending and are picked up on the next start
        logger.error(f"Failed to reconcile pending deliveries: {e}")

    yield

    # Shutdown
    sweeper.cancel()
    with suppress(asyncio.CancelledError):
        await sweeper
    await services.webhooks.scheduler.shutdown()
    await services.webhooks.aclose()


# Create FastAPI app
app = FastAPI(
    title="FileDrop API",
    description="Upload ingestion service with storage backends, upload tokens and webhooks",
    version="0.1.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Metrics middleware (must be after CORS to track all requests)
app.add_middleware(MetricsMiddleware)


@app.exception_handler(FileDropError)
async def filedrop_error_handler(request: Request, exc: FileDropError):
    """Render domain errors as {"detail": message} with their status code."""
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# Include API routes
app.include_router(api_router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "FileDrop API",
        "version": "0.1.0",
        "environment": settings.environment,
        "storage_backend": settings.storage_backend,
    }


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )

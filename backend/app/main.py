"""
FastAPI application entry point.
Sets up the API with lifespan events for database initialization and the
long-lived provider gateway, polling registry and reconciler.
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from app.config import settings
from app.database import init_db, AsyncSessionLocal
from app.api.router import api_router
from app.ai.prompt_refiner import PromptRefiner
from app.auth.firebase import initialize_firebase
from app.middleware.metrics_middleware import MetricsMiddleware
from app.services.polling_registry import PollingRegistry
from app.services.provider_gateway import KieGateway
from app.services.reconciler import CompletionReconciler
from app.utils.logging import configure_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup/shutdown events.
    - Startup: database, Firebase Admin SDK, provider gateway and pollers
    - Shutdown: stop every poller, close the provider client
    """
    configure_logging('vr-api', settings.log_level)

    await init_db()

    # Skip if Firebase config not provided (for local dev without Firebase)
    if settings.firebase_project_id:
        try:
            initialize_firebase()
        except Exception as e:
            if settings.environment == "production":
                raise
            logger.warning(f"Firebase initialization failed: {e}")

    gateway = KieGateway.from_settings()
    registry = PollingRegistry(
        interval_seconds=settings.polling_interval_seconds,
        max_attempts=settings.polling_max_attempts,
    )
    app.state.provider_gateway = gateway
    app.state.polling_registry = registry
    app.state.reconciler = CompletionReconciler(AsyncSessionLocal, gateway, registry)
    app.state.prompt_refiner = PromptRefiner()

    yield

    # In-flight polls are dropped here; the stale-job sweep recovers them
    await registry.drain()
    await gateway.aclose()


app = FastAPI(
    title="VeoReel API",
    description="Video generation jobs, credits and subscriptions",
    version="0.1.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Metrics middleware (must be after CORS to track all requests)
app.add_middleware(MetricsMiddleware)

app.include_router(api_router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "VeoReel API",
        "version": "0.1.0",
        "environment": settings.environment
    }


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )

"""
FastAPI application entry point for the Studio API.

Startup creates tables, initializes Firebase and reports whether the
compute provider is configured; shutdown disposes the database engine.
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from app.ai.factory import get_provider_name
from app.ai.replicate_provider import ReplicateProvider
from app.config import settings
from app.database import engine, init_db
from app.api.router import api_router
from app.auth.firebase import initialize_firebase
from app.middleware.metrics_middleware import MetricsMiddleware
from app.utils.logging import configure_logging

logger = logging.getLogger(__name__)

API_VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging('studio-api', settings.log_level)

    await init_db()

    # Firebase is optional outside production (local dev without auth)
    if settings.firebase_project_id:
        try:
            initialize_firebase()
        except Exception as e:
            if settings.environment == "production":
                raise
            logger.warning(f"Firebase initialization failed: {e}")

    if not ReplicateProvider().is_configured():
        logger.warning(
            "Compute provider token missing; job submission will return 503",
            extra={"event": "provider_not_configured"}
        )

    yield

    await engine.dispose()


app = FastAPI(
    title="Studio API",
    description="Credit-gated LoRA training and generation jobs",
    version=API_VERSION,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Added last so it wraps CORS and sees every request
app.add_middleware(MetricsMiddleware)

app.include_router(api_router, prefix="/api")


@app.get("/")
async def root():
    return {
        "message": "Studio API",
        "version": API_VERSION,
        "environment": settings.environment,
        "provider": get_provider_name(),
    }


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )

"""Main FastAPI application for the voice integrity service."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from voice_integrity.config import settings
from voice_integrity.api.sessions import router as sessions_router
from voice_integrity.api.vapi_webhook import router as vapi_webhook_router
from voice_integrity.middleware import (
    RequestLoggingMiddleware,
    MetricsMiddleware,
    get_metrics
)
from voice_integrity.models.api_models import HealthResponse
from voice_integrity.observability import (
    setup_observability,
    instrument_fastapi_app,
    TracingContextMiddleware
)
from voice_integrity.services.session import get_session_manager

SERVICE_VERSION = "1.0.0"

logging.basicConfig(level=settings.log_level.upper(), format="%(message)s")

# Configure structured logging
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting voice integrity service",
                port=settings.port,
                host=settings.host,
                biometric_backend=settings.biometric_backend,
                audio_source=settings.audio_source,
                verification_enabled=settings.verification_enabled)

    if not settings.verification_enabled:
        logger.warning("PICOVOICE_ACCESS_KEY not configured, calls will run without voice verification")

    yield

    logger.info("Shutting down voice integrity service")
    await get_session_manager().shutdown()


# Create FastAPI application
app = FastAPI(
    title="Voice Integrity Service",
    description="Continuous voice verification for AI-conducted interview calls",
    version=SERVICE_VERSION,
    lifespan=lifespan
)

# Add middleware (order matters - last added is executed first)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(MetricsMiddleware)
app.add_middleware(TracingContextMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routers
app.include_router(vapi_webhook_router)
app.include_router(sessions_router)

# Instrumentation adds middleware, so it has to run before the app starts
setup_observability(
    service_name="voice-integrity-service",
    service_version=SERVICE_VERSION,
    otlp_endpoint=settings.otlp_endpoint,
    enable_console_export=settings.otel_console_export
)
instrument_fastapi_app(app)


@app.get("/healthz", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    live = [s for s in get_session_manager().list() if not s.is_finished]
    return HealthResponse(
        status="healthy",
        timestamp=datetime.utcnow(),
        version=SERVICE_VERSION,
        active_sessions=len(live)
    )


@app.get("/metrics")
async def metrics_endpoint():
    """Application metrics endpoint."""
    sessions = get_session_manager().list()
    return {
        "timestamp": datetime.utcnow().isoformat(),
        "metrics": get_metrics(),
        "sessions": {
            "total": len(sessions),
            "active": sum(1 for s in sessions if not s.is_finished),
            "mismatches": sum(len(s.mismatch_events) for s in sessions)
        }
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "voice_integrity.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        reload=False
    )

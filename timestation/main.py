"""Main FastAPI application for the fingerprint time station."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from timestation.api.device import router as device_router
from timestation.api.enrollment import router as enrollment_router
from timestation.api.errors import fingerprint_error_handler
from timestation.api.verification import router as verification_router
from timestation.clients.device_client import get_device_client
from timestation.clients.record_store_client import get_record_store_client
from timestation.config import settings
from timestation.errors import FingerprintError
from timestation.middleware import (
    MetricsMiddleware,
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
    get_metrics,
)
from timestation.models.api_models import HealthResponse
from timestation.observability import (
    TracingContextMiddleware,
    instrument_fastapi_app,
    setup_observability,
)
from timestation.services.device_monitor import get_device_monitor
from timestation.services.sessions import get_session_registry

SERVICE_NAME = "timestation"
SERVICE_VERSION = "1.0.0"

logging.basicConfig(format="%(message)s", level=settings.log_level.upper())

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
    logger.info(
        "Starting time station service",
        port=settings.port,
        host=settings.host,
        device_service_url=settings.device_service_url,
        record_store_url=settings.record_store_url
    )

    setup_observability(
        service_name=SERVICE_NAME,
        service_version=SERVICE_VERSION,
        otlp_endpoint=settings.otlp_endpoint,
        enable_console_export=settings.enable_console_export
    )
    instrument_fastapi_app(app)

    monitor = get_device_monitor()
    monitor.start()

    yield

    logger.info("Shutting down time station service", active_sessions=get_session_registry().active_count())
    await monitor.stop()
    await get_device_client().close()
    await get_record_store_client().close()


app = FastAPI(
    title="Fingerprint Time Station",
    description="Fingerprint enrollment and verification for clock-in, clock-out and leave authorization",
    version=SERVICE_VERSION,
    lifespan=lifespan
)

# Last added runs first
app.add_middleware(SecurityHeadersMiddleware)
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

app.add_exception_handler(FingerprintError, fingerprint_error_handler)

app.include_router(enrollment_router)
app.include_router(verification_router)
app.include_router(device_router)


@app.get("/healthz", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc),
        version=SERVICE_VERSION
    )


@app.get("/metrics")
async def metrics_endpoint():
    """Application metrics endpoint."""
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "metrics": get_metrics(),
        "active_sessions": get_session_registry().active_count()
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "timestation.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        reload=False
    )

import os
import time

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .core.logging import configure_logging, get_logger, get_trace_id
from .core.middleware import TraceIDMiddleware
from .core.tracing import (
    StatusCode,
    configure_tracing,
    get_trace_id_from_context,
    instrument_fastapi,
    record_exception,
    set_span_status,
    shutdown_tracing,
)
from .routes import admin, agent, health, metrics
from .services.orchestration.credentials import get_credential_manager
from .services.orchestration.errors import CredentialPoolConfigurationError

# Configure structured logging
# Use JSON output in production (containerized), console output in development
log_level = os.getenv("LOG_LEVEL", "INFO")
json_output = os.getenv("LOG_JSON", "true").lower() == "true"
configure_logging(log_level=log_level, json_output=json_output)

logger = get_logger(__name__)

# Spans are exported only when OTEL_EXPORTER_OTLP_ENDPOINT is set
configure_tracing()

app = FastAPI(
    title="GradPilot Agent API",
    description="Specialist routing and coordination for postgraduate applicants",
    version="0.1.0"
)

# CORS for local dev; restrict in production
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Add trace ID middleware (must be after CORS middleware)
app.add_middleware(TraceIDMiddleware)

instrument_fastapi(app)


@app.on_event("startup")
async def startup_event():
    """Build the credential pool eagerly so misconfiguration shows up at boot."""
    logger.info("app_startup_started")
    try:
        pool = get_credential_manager()
    except CredentialPoolConfigurationError as exc:
        logger.warning(
            "app_startup_credentials_unavailable",
            message=str(exc),
        )
    else:
        logger.info("app_startup_credentials_ready", keys=len(pool))
    logger.info("app_startup_completed")


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup resources on application shutdown."""
    logger.info("app_shutdown_started")
    shutdown_tracing()
    logger.info("app_shutdown_completed")


def _error_response(status_code: int, detail, trace_id) -> JSONResponse:
    response = JSONResponse(
        status_code=status_code,
        content={
            "detail": detail,
            "status_code": status_code,
            "trace_id": trace_id,
        }
    )
    if trace_id:
        response.headers["X-Trace-ID"] = trace_id
    return response


# Error handlers
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions."""
    trace_id = get_trace_id() or get_trace_id_from_context()
    set_span_status(StatusCode.ERROR if exc.status_code >= 500 else StatusCode.OK, str(exc.detail))

    start_time = getattr(request.state, "start_time", time.time())
    logger.warning(
        "http_exception",
        status_code=exc.status_code,
        detail=exc.detail,
        path=request.url.path,
        method=request.method,
        latency_ms=int((time.time() - start_time) * 1000),
    )
    return _error_response(exc.status_code, exc.detail, trace_id)


@app.exception_handler(CredentialPoolConfigurationError)
async def credential_configuration_handler(request: Request, exc: CredentialPoolConfigurationError):
    """No oracle keys configured: the agent cannot serve requests."""
    trace_id = get_trace_id() or get_trace_id_from_context()
    set_span_status(StatusCode.ERROR, str(exc))
    logger.error(
        "credential_pool_unconfigured",
        error=str(exc),
        path=request.url.path,
        method=request.method,
    )
    return _error_response(503, "Oracle credentials are not configured", trace_id)


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle general exceptions."""
    trace_id = get_trace_id() or get_trace_id_from_context()

    record_exception(exc)
    set_span_status(StatusCode.ERROR, str(exc))

    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
        method=request.method,
        exc_info=True,
    )
    return _error_response(500, "Internal server error", trace_id)


# Include routers
app.include_router(health.router, prefix="/health", tags=["Health"])
app.include_router(agent.router, prefix="/agent", tags=["Agent"])
app.include_router(metrics.router, prefix="/metrics", tags=["Metrics"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])

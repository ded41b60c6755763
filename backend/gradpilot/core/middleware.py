"""
Middleware for trace ID propagation and request context management.

- Continues an incoming W3C trace (traceparent) as the parent of the request span
- Takes the trace ID from X-Trace-ID / X-Request-ID, the request span (which
  carries the incoming W3C trace), or generates one
- Generates a request ID per request
- Binds trace/request/user IDs for structured logging
- Records RED metrics and echoes X-Trace-ID / X-Request-ID on the response
"""
import time
from typing import Callable

from fastapi import Request, Response
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator
from starlette.middleware.base import BaseHTTPMiddleware

from .logging import (
    generate_request_id,
    generate_trace_id,
    get_logger,
    set_request_id,
    set_trace_id,
    set_user_id,
)
from .metrics import record_http_request
from .tracing import (
    StatusCode,
    extract_trace_context,
    get_trace_id_from_context,
    get_tracer,
    record_exception,
    set_span_attribute,
    set_span_status,
)

logger = get_logger(__name__)


def _otel_to_uuid(trace_id: str) -> str:
    return f"{trace_id[0:8]}-{trace_id[8:12]}-{trace_id[12:16]}-{trace_id[16:20]}-{trace_id[20:32]}"


class TraceIDMiddleware(BaseHTTPMiddleware):
    """Bind trace/request/user context for each HTTP request."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        carrier = extract_trace_context(dict(request.headers))
        parent = TraceContextTextMapPropagator().extract(carrier) if carrier else None

        tracer = get_tracer()
        with tracer.start_as_current_span("http.request", context=parent):
            trace_id = request.headers.get("X-Trace-ID") or request.headers.get("X-Request-ID")
            if not trace_id:
                otel_trace_id = get_trace_id_from_context()
                if otel_trace_id and len(otel_trace_id) == 32:
                    trace_id = _otel_to_uuid(otel_trace_id)
                else:
                    trace_id = generate_trace_id()

            request_id = generate_request_id()
            user_id = request.headers.get("X-User-ID")

            set_trace_id(trace_id)
            set_request_id(request_id)
            if user_id:
                set_user_id(user_id)

            set_span_attribute("http.method", request.method)
            set_span_attribute("http.route", request.url.path)

            start_time = time.time()
            request.state.start_time = start_time
            logger.info(
                "request_started",
                method=request.method,
                path=request.url.path,
                client_host=request.client.host if request.client else None,
            )

            try:
                response = await call_next(request)
                process_time = time.time() - start_time
                set_span_attribute("http.status_code", response.status_code)
                record_http_request(
                    method=request.method,
                    endpoint=request.url.path,
                    status_code=response.status_code,
                    duration_seconds=process_time,
                )
                logger.info(
                    "request_completed",
                    method=request.method,
                    path=request.url.path,
                    status_code=response.status_code,
                    latency_ms=int(process_time * 1000),
                )
                response.headers["X-Trace-ID"] = trace_id
                response.headers["X-Request-ID"] = request_id
                return response

            except Exception as e:
                process_time = time.time() - start_time
                record_exception(e)
                set_span_status(StatusCode.ERROR, str(e))
                record_http_request(
                    method=request.method,
                    endpoint=request.url.path,
                    status_code=500,
                    duration_seconds=process_time,
                )
                logger.error(
                    "request_failed",
                    method=request.method,
                    path=request.url.path,
                    error=str(e),
                    error_type=type(e).__name__,
                    latency_ms=int(process_time * 1000),
                    exc_info=True,
                )
                raise
            finally:
                set_trace_id(None)
                set_request_id(None)
                set_user_id(None)

"""
Prometheus metrics collection module.

Metrics Categories:
- RED Metrics: Rate, Errors, Duration for the HTTP API
- Oracle Metrics: reasoning-oracle latency, errors, token usage
- Orchestration Metrics: plan strategies, fallbacks, specialist task outcomes
- Credential Pool Metrics: active keys, remaining quota, exhaustion events
- Resource Metrics: CPU, memory

All metrics follow Prometheus naming conventions:
- Counters: _total suffix
- Histograms: _seconds suffix for duration
- Gauges: No special suffix
"""
from typing import Optional

import psutil
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from gradpilot.core.logging import get_logger

logger = get_logger(__name__)

registry = REGISTRY

# ============================================================================
# RED METRICS - Rate, Errors, Duration
# ============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total number of HTTP requests",
    ["method", "endpoint", "status"],
    registry=registry,
)

http_errors_total = Counter(
    "http_errors_total",
    "Total number of HTTP errors",
    ["method", "endpoint", "status_code"],
    registry=registry,
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
    registry=registry,
)

# ============================================================================
# ORACLE METRICS
# ============================================================================

oracle_requests_total = Counter(
    "oracle_requests_total",
    "Total number of reasoning oracle requests",
    ["operation", "model"],
    registry=registry,
)

oracle_request_duration_seconds = Histogram(
    "oracle_request_duration_seconds",
    "Reasoning oracle round-trip latency in seconds",
    ["operation", "model"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=registry,
)

oracle_errors_total = Counter(
    "oracle_errors_total",
    "Total number of reasoning oracle errors",
    ["operation", "error_type"],
    registry=registry,
)

oracle_tokens_total = Counter(
    "oracle_tokens_total",
    "Total tokens consumed by reasoning oracle calls",
    ["operation", "direction"],
    registry=registry,
)

# ============================================================================
# ORCHESTRATION METRICS
# ============================================================================

classification_fallbacks_total = Counter(
    "classification_fallbacks_total",
    "Total number of requests routed by the deterministic fallback planner",
    ["reason"],
    registry=registry,
)

routing_plans_total = Counter(
    "routing_plans_total",
    "Total number of routing plans executed",
    ["strategy", "source"],
    registry=registry,
)

specialist_tasks_total = Counter(
    "specialist_tasks_total",
    "Total number of specialist tasks by outcome",
    ["agent", "task_type", "outcome"],
    registry=registry,
)

specialist_task_duration_seconds = Histogram(
    "specialist_task_duration_seconds",
    "Specialist task execution time in seconds",
    ["agent"],
    buckets=[0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0],
    registry=registry,
)

# ============================================================================
# CREDENTIAL POOL METRICS
# ============================================================================

credential_pool_active_keys = Gauge(
    "credential_pool_active_keys",
    "Number of active credential keys",
    registry=registry,
)

credential_pool_remaining_quota = Gauge(
    "credential_pool_remaining_quota",
    "Remaining daily quota summed over active credential keys",
    registry=registry,
)

credential_key_events_total = Counter(
    "credential_key_events_total",
    "Credential key state transitions",
    ["event"],
    registry=registry,
)

# ============================================================================
# RESOURCE METRICS
# ============================================================================

system_cpu_usage_percent = Gauge(
    "system_cpu_usage_percent",
    "System CPU usage percentage",
    registry=registry,
)

system_memory_usage_bytes = Gauge(
    "system_memory_usage_bytes",
    "System memory usage in bytes",
    registry=registry,
)


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def normalize_endpoint(path: str) -> str:
    """
    Normalize endpoint path for metrics.

    Replaces dynamic segments with placeholders to avoid high cardinality.

    Examples:
        /admin/credentials/3/reset -> /admin/credentials/{index}/reset
        /agent/chat?x=1 -> /agent/chat
    """
    if "?" in path:
        path = path.split("?")[0]

    if path.startswith("/admin/credentials/"):
        parts = path.split("/")
        if len(parts) >= 5 and parts[3].isdigit():
            parts[3] = "{index}"
            return "/".join(parts)

    return path


def record_http_request(
    method: str,
    endpoint: str,
    status_code: int,
    duration_seconds: float,
) -> None:
    """Record HTTP request metrics (RED metrics)."""
    normalized_endpoint = normalize_endpoint(endpoint)

    http_requests_total.labels(
        method=method,
        endpoint=normalized_endpoint,
        status=str(status_code),
    ).inc()

    if status_code >= 400:
        http_errors_total.labels(
            method=method,
            endpoint=normalized_endpoint,
            status_code=str(status_code),
        ).inc()

    http_request_duration_seconds.labels(
        method=method,
        endpoint=normalized_endpoint,
    ).observe(duration_seconds)


def record_oracle_request(operation: str, model: str, duration_seconds: float) -> None:
    """Record one oracle round trip (``operation`` is "classify" or "execute")."""
    oracle_requests_total.labels(operation=operation, model=model).inc()
    oracle_request_duration_seconds.labels(operation=operation, model=model).observe(
        duration_seconds
    )


def record_oracle_error(operation: str, error_type: str) -> None:
    oracle_errors_total.labels(operation=operation, error_type=error_type).inc()


def record_oracle_tokens(operation: str, input_tokens: int, output_tokens: int) -> None:
    if input_tokens:
        oracle_tokens_total.labels(operation=operation, direction="input").inc(input_tokens)
    if output_tokens:
        oracle_tokens_total.labels(operation=operation, direction="output").inc(output_tokens)


def record_classification_fallback(reason: str) -> None:
    """
    Record that a request was routed by the fallback planner.

    Args:
        reason: "classification" or "planning"
    """
    classification_fallbacks_total.labels(reason=reason).inc()


def record_routing_plan(strategy: str, source: str) -> None:
    """
    Record an executed routing plan.

    Args:
        strategy: sequential | parallel | mixed
        source: "classifier" or "fallback"
    """
    routing_plans_total.labels(strategy=strategy, source=source).inc()


def record_specialist_task(
    agent: str,
    task_type: str,
    success: bool,
    duration_seconds: Optional[float] = None,
) -> None:
    outcome = "success" if success else "failure"
    specialist_tasks_total.labels(agent=agent, task_type=task_type, outcome=outcome).inc()
    if duration_seconds is not None:
        specialist_task_duration_seconds.labels(agent=agent).observe(duration_seconds)


def update_credential_pool_metrics(active_keys: int, remaining_quota: int) -> None:
    credential_pool_active_keys.set(active_keys)
    credential_pool_remaining_quota.set(remaining_quota)


def record_credential_event(event: str) -> None:
    """
    Record a credential key transition.

    Args:
        event: "exhausted", "invalidated", "banned", "rollover_reset" or "manual_reset"
    """
    credential_key_events_total.labels(event=event).inc()


def update_resource_metrics() -> None:
    """Update system resource metrics (CPU, memory)."""
    try:
        system_cpu_usage_percent.set(psutil.cpu_percent(interval=None))
        system_memory_usage_bytes.set(psutil.virtual_memory().used)
    except Exception as e:
        logger.warning(
            "metrics_resource_update_failed",
            error=str(e),
            error_type=type(e).__name__,
        )


def get_metrics() -> bytes:
    """Get Prometheus metrics in text format."""
    update_resource_metrics()
    return generate_latest(registry)


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST

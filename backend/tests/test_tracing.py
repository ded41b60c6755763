"""
Unit tests for OpenTelemetry distributed tracing.

Tests verify:
- Tracing configuration works with and without an OTLP endpoint
- Span helpers operate on the current span
- Trace context extraction from W3C headers
- Coordinated plans run inside spans without affecting results
"""
import pytest

from gradpilot.core.tracing import (
    StatusCode,
    configure_tracing,
    extract_trace_context,
    get_trace_id_from_context,
    get_tracer,
    record_exception,
    set_span_attribute,
    set_span_status,
)

TRACEPARENT = "00-4bf92f3577b34da6a3ce929d0e0e4736-00f067aa0ba902b7-01"


class TestTracingConfiguration:
    def test_configure_tracing_defaults(self, monkeypatch):
        monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)

        configure_tracing()

        assert get_tracer() is not None

    def test_configure_tracing_with_sampling(self):
        configure_tracing(service_name="test_service", sampling_rate=0.5)
        assert get_tracer() is not None


class TestSpanHelpers:
    def test_trace_id_inside_span(self):
        configure_tracing()

        with get_tracer().start_as_current_span("test.operation"):
            trace_id = get_trace_id_from_context()

        assert trace_id is not None
        assert len(trace_id) == 32
        int(trace_id, 16)

    def test_no_trace_id_outside_span(self):
        assert get_trace_id_from_context() is None

    def test_helpers_do_not_raise(self):
        configure_tracing()

        with get_tracer().start_as_current_span("test.operation") as span:
            set_span_attribute("plan.strategy", "parallel")
            set_span_attribute("plan.steps", 3)
            set_span_status(StatusCode.ERROR, "partial_failure")
            record_exception(ValueError("boom"))
            assert span is not None


class TestTraceContextExtraction:
    def test_extracts_traceparent(self):
        carrier = extract_trace_context({"traceparent": TRACEPARENT})

        assert carrier is not None
        assert carrier["traceparent"] == TRACEPARENT

    def test_missing_headers(self):
        assert extract_trace_context({}) is None


@pytest.mark.asyncio
async def test_plan_execution_inside_span(make_oracle, make_task, user_context):
    from gradpilot.services.orchestration.coordinator import ExecutionCoordinator
    from gradpilot.services.orchestration.schema import RoutingPlan, SpecialistId, TaskType
    from gradpilot.services.orchestration.specialists import build_default_registry

    configure_tracing()
    plan = RoutingPlan(
        primary_agent=SpecialistId.POSTGRAD_APPLICATION,
        steps=[make_task("a", TaskType.GREETING)],
    )
    coordinator = ExecutionCoordinator(build_default_registry(make_oracle()))

    with get_tracer().start_as_current_span("test.request"):
        result = await coordinator.execute(plan, user_context)

    assert result.success

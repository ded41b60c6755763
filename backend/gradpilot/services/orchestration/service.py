"""
Orchestration service: the end-to-end request handler.

Flow:
1. Classify the message with the reasoning oracle
2. Build a routing plan from the classification
3. Fall back to keyword routing if either step fails
4. Coordinate the specialists and return the synthesized result

``handle`` never raises; unexpected faults produce an apology response.

Environment configuration:
- ORCHESTRATION_MAX_CONCURRENCY: Parallel step cap (default: 4)
- ORCHESTRATION_PARTIAL_SUCCESS_THRESHOLD: Fraction of succeeded steps that
  still counts as success (default: unset, every step must succeed)
- SPECIALIST_MAX_ROUND_TRIPS: Oracle round trips per specialist turn (default: 50)
"""
import os
import time
from typing import Optional, Tuple

from gradpilot.core.logging import get_logger
from gradpilot.core.metrics import record_classification_fallback, record_routing_plan

from .classifier import IntentClassifier
from .coordinator import DEFAULT_MAX_CONCURRENCY, ExecutionCoordinator
from .errors import ClassificationError, PlanningError
from .fallback import FallbackPlanner
from .oracle import ReasoningOracle, get_reasoning_oracle
from .planner import RoutingPlanner
from .progress import ProgressCallback, notify_progress
from .schema import OrchestrationResult, PlanStatus, RoutingPlan, UserContext
from .specialist import DEFAULT_MAX_ROUND_TRIPS
from .specialists import build_default_registry
from .tools import ToolRegistry

logger = get_logger(__name__)


class OrchestrationService:
    def __init__(
        self,
        classifier: IntentClassifier,
        planner: RoutingPlanner,
        fallback: FallbackPlanner,
        coordinator: ExecutionCoordinator,
    ):
        self.classifier = classifier
        self.planner = planner
        self.fallback = fallback
        self.coordinator = coordinator

    @classmethod
    def from_oracle(
        cls,
        oracle: ReasoningOracle,
        tool_registry: Optional[ToolRegistry] = None,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        partial_success_threshold: Optional[float] = None,
        max_round_trips: int = DEFAULT_MAX_ROUND_TRIPS,
    ) -> "OrchestrationService":
        registry = build_default_registry(oracle, tool_registry, max_round_trips)
        return cls(
            classifier=IntentClassifier(oracle),
            planner=RoutingPlanner(),
            fallback=FallbackPlanner(),
            coordinator=ExecutionCoordinator(
                registry,
                max_concurrency=max_concurrency,
                partial_success_threshold=partial_success_threshold,
            ),
        )

    async def route(self, message: str, context: UserContext) -> Tuple[RoutingPlan, bool]:
        """Plan for ``message``; the flag is True when fallback routing was used."""
        try:
            classification = await self.classifier.classify(message, context.history, context)
            return self.planner.plan(classification, message, context), False
        except (ClassificationError, PlanningError) as exc:
            reason = "classification" if isinstance(exc, ClassificationError) else "planning"
            record_classification_fallback(reason)
            logger.warning(
                "routing_fallback",
                reason=reason,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            plan = self.fallback.plan(message, context)
            record_routing_plan(plan.strategy.value, "fallback")
            return plan, True

    async def handle(
        self,
        message: str,
        context: UserContext,
        on_progress: Optional[ProgressCallback] = None,
    ) -> OrchestrationResult:
        start = time.perf_counter()
        try:
            notify_progress(on_progress, "Getting started...")
            plan, used_fallback = await self.route(message, context)
            notify_progress(
                on_progress,
                "Got it! Starting work now...",
                total_steps=len(plan.steps),
            )
            result = await self.coordinator.execute(plan, context, on_progress)
            return result.model_copy(update={"used_fallback": used_fallback})
        except Exception as exc:
            logger.error(
                "orchestration_failed",
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=True,
            )
            notify_progress(on_progress, f"Orchestration error: {exc}")
            return OrchestrationResult(
                success=False,
                status=PlanStatus.ABORTED,
                final_response=(
                    "I encountered an error coordinating the specialist agents. "
                    "Please try again in a moment."
                ),
                errors=[f"{type(exc).__name__}: {exc}"],
                execution_time_ms=(time.perf_counter() - start) * 1000,
            )


_orchestration_service: Optional[OrchestrationService] = None


def _optional_float(name: str) -> Optional[float]:
    value = os.getenv(name, "").strip()
    return float(value) if value else None


def get_orchestration_service() -> OrchestrationService:
    """Process-wide service wired to the HTTP oracle and credential pool."""
    global _orchestration_service
    if _orchestration_service is None:
        _orchestration_service = OrchestrationService.from_oracle(
            get_reasoning_oracle(),
            max_concurrency=int(
                os.getenv("ORCHESTRATION_MAX_CONCURRENCY", str(DEFAULT_MAX_CONCURRENCY))
            ),
            partial_success_threshold=_optional_float("ORCHESTRATION_PARTIAL_SUCCESS_THRESHOLD"),
            max_round_trips=int(
                os.getenv("SPECIALIST_MAX_ROUND_TRIPS", str(DEFAULT_MAX_ROUND_TRIPS))
            ),
        )
    return _orchestration_service

"""
Execution coordinator: runs a RoutingPlan's steps under its strategy.

- sequential: steps run in order; each successful payload is folded into the
  next step's input as ``previous_output``. A failure the recovery policy
  judges non-recoverable aborts the remaining steps.
- parallel: every step runs concurrently, bounded by ``max_concurrency``.
- mixed: steps are grouped into dependency tiers. Tiers run in order and the
  steps of a tier run concurrently. A step whose dependency failed is
  recorded as failed without running; dependency payloads are folded in as
  ``dependency_outputs``.

The coordination log is always ordered by step index.
"""
import asyncio
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from gradpilot.core.logging import get_logger
from gradpilot.core.tracing import (
    StatusCode,
    get_tracer,
    set_span_attribute,
    set_span_status,
)

from .progress import ProgressCallback, notify_progress
from .registry import SpecialistRegistry
from .schema import (
    CoordinationStep,
    CoordinationStrategy,
    OrchestrationResult,
    PlanStatus,
    Priority,
    RoutingPlan,
    SpecialistResult,
    StepStatus,
    Task,
    UserContext,
)

logger = get_logger(__name__)

RecoveryPolicy = Callable[[Task, SpecialistResult], bool]

DEFAULT_MAX_CONCURRENCY = 4


def default_recovery_policy(task: Task, result: SpecialistResult) -> bool:
    """A failed step is recoverable unless the task was critical."""
    return task.priority != Priority.CRITICAL


def _payload_text(payload: Any) -> str:
    if payload is None:
        return ""
    return payload if isinstance(payload, str) else str(payload)


def synthesize_response(results: List[SpecialistResult]) -> str:
    """Combine specialist payloads into the user-facing reply."""
    if not results:
        return "I wasn't able to complete your request."

    if len(results) == 1:
        result = results[0]
        if result.success:
            return _payload_text(result.payload)
        return f"I encountered an issue: {', '.join(result.errors or ['Unknown error'])}"

    succeeded = [result for result in results if result.success]
    failed = [result for result in results if not result.success]

    if not succeeded:
        details = ". ".join(", ".join(result.errors or []) for result in failed)
        return f"I wasn't able to complete your request. {details}"

    response = "\n\n".join(_payload_text(result.payload) for result in succeeded)
    if failed:
        response += (
            f"\n\nNote: I had some difficulties with part of your request "
            f"({len(failed)} tasks encountered issues), but I was able to complete "
            f"the main parts above."
        )
    return response


def dependency_tiers(steps: List[Task]) -> List[List[int]]:
    """Group step indices by dependency depth; dependencies always precede."""
    depth: Dict[str, int] = {}
    tiers: List[List[int]] = []
    for index, task in enumerate(steps):
        level = 1 + max((depth[dep] for dep in task.dependencies if dep in depth), default=-1)
        depth[task.id] = level
        while len(tiers) <= level:
            tiers.append([])
        tiers[level].append(index)
    return tiers


class ExecutionCoordinator:
    def __init__(
        self,
        registry: SpecialistRegistry,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        partial_success_threshold: Optional[float] = None,
        recovery_policy: RecoveryPolicy = default_recovery_policy,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if partial_success_threshold is not None and not 0.0 < partial_success_threshold <= 1.0:
            raise ValueError("partial_success_threshold must be in (0, 1]")
        self.registry = registry
        self.max_concurrency = max_concurrency
        self.partial_success_threshold = partial_success_threshold
        self.recovery_policy = recovery_policy

    async def _run_step(
        self,
        index: int,
        task: Task,
        total: int,
        context: UserContext,
        on_progress: Optional[ProgressCallback],
        extra_input: Optional[Dict[str, Any]] = None,
    ) -> CoordinationStep:
        if extra_input:
            task = task.model_copy(update={"input": {**task.input, **extra_input}})

        specialist = self.registry.select(task.type)
        if specialist is None:
            result = SpecialistResult.failure(
                task.id, [f"No specialist available for task type {task.type.value}"]
            )
            return CoordinationStep(
                id=task.id,
                agent_name="unassigned",
                task=task,
                result=result,
                dependencies=list(task.dependencies),
                status=StepStatus.FAILED,
            )

        notify_progress(
            on_progress,
            f"Delegating {task.type.value} to {specialist.name}...",
            step_index=index,
            total_steps=total,
        )
        logger.debug(
            "step_started",
            step_id=task.id,
            agent=specialist.name,
            task_type=task.type.value,
            status=StepStatus.RUNNING.value,
        )

        tracer = get_tracer()
        with tracer.start_as_current_span("orchestration.step"):
            set_span_attribute("step.id", task.id)
            set_span_attribute("step.index", index)
            set_span_attribute("step.agent", specialist.name)
            set_span_attribute("step.task_type", task.type.value)
            try:
                result = await specialist.execute_task(task, context, on_progress)
            except Exception as exc:
                logger.error(
                    "step_execution_error",
                    step_id=task.id,
                    agent=specialist.name,
                    error=str(exc),
                    error_type=type(exc).__name__,
                    exc_info=True,
                )
                result = SpecialistResult.failure(task.id, [f"{type(exc).__name__}: {exc}"])
            if not result.success:
                set_span_status(StatusCode.ERROR, "; ".join(result.errors or []))

        status = StepStatus.COMPLETED if result.success else StepStatus.FAILED
        logger.info(
            "step_finished",
            step_id=task.id,
            agent=specialist.name,
            status=status.value,
            execution_time_ms=round(result.metadata.execution_time_ms, 2),
        )
        return CoordinationStep(
            id=task.id,
            agent_name=specialist.name,
            task=task,
            result=result,
            dependencies=list(task.dependencies),
            status=status,
        )

    async def _run_sequential(
        self,
        plan: RoutingPlan,
        context: UserContext,
        on_progress: Optional[ProgressCallback],
    ) -> Tuple[List[CoordinationStep], bool]:
        steps: List[CoordinationStep] = []
        previous_output: Any = None
        total = len(plan.steps)
        for index, task in enumerate(plan.steps):
            extra = {"previous_output": previous_output} if previous_output is not None else None
            step = await self._run_step(index, task, total, context, on_progress, extra)
            steps.append(step)
            if step.result.success:
                previous_output = step.result.payload
            elif not self.recovery_policy(task, step.result):
                logger.warning("plan_aborted", step_id=task.id, remaining=total - index - 1)
                return steps, True
        return steps, False

    async def _run_parallel(
        self,
        plan: RoutingPlan,
        context: UserContext,
        on_progress: Optional[ProgressCallback],
    ) -> Tuple[List[CoordinationStep], bool]:
        semaphore = asyncio.Semaphore(self.max_concurrency)
        total = len(plan.steps)

        async def bounded(index: int, task: Task) -> Tuple[int, CoordinationStep]:
            async with semaphore:
                return index, await self._run_step(index, task, total, context, on_progress)

        finished = await asyncio.gather(
            *(bounded(index, task) for index, task in enumerate(plan.steps))
        )
        return [step for _, step in sorted(finished, key=lambda item: item[0])], False

    async def _run_mixed(
        self,
        plan: RoutingPlan,
        context: UserContext,
        on_progress: Optional[ProgressCallback],
    ) -> Tuple[List[CoordinationStep], bool]:
        semaphore = asyncio.Semaphore(self.max_concurrency)
        total = len(plan.steps)
        finished: Dict[int, CoordinationStep] = {}
        by_id: Dict[str, CoordinationStep] = {}

        async def bounded(index: int, task: Task, extra: Dict[str, Any]) -> Tuple[int, CoordinationStep]:
            async with semaphore:
                return index, await self._run_step(
                    index, task, total, context, on_progress, extra or None
                )

        for tier in dependency_tiers(plan.steps):
            runnable = []
            for index in tier:
                task = plan.steps[index]
                failed = [
                    dep for dep in task.dependencies
                    if by_id[dep].status != StepStatus.COMPLETED
                ]
                if failed:
                    step = CoordinationStep(
                        id=task.id,
                        agent_name=self._agent_name(task),
                        task=task,
                        result=SpecialistResult.failure(
                            task.id, [f"Dependency failed: {', '.join(failed)}"]
                        ),
                        dependencies=list(task.dependencies),
                        status=StepStatus.FAILED,
                    )
                    finished[index] = step
                    by_id[task.id] = step
                    continue
                extra = {}
                if task.dependencies:
                    extra["dependency_outputs"] = {
                        dep: by_id[dep].result.payload for dep in task.dependencies
                    }
                runnable.append(bounded(index, task, extra))

            for index, step in await asyncio.gather(*runnable):
                finished[index] = step
                by_id[step.id] = step

            for index in tier:
                step = finished[index]
                if step.status == StepStatus.FAILED and not self.recovery_policy(
                    plan.steps[index], step.result
                ):
                    logger.warning("plan_aborted", step_id=step.id, remaining=total - len(finished))
                    return [finished[i] for i in sorted(finished)], True

        return [finished[i] for i in sorted(finished)], False

    def _agent_name(self, task: Task) -> str:
        specialist = self.registry.select(task.type)
        return specialist.name if specialist is not None else "unassigned"

    def _is_success(self, plan: RoutingPlan, steps: List[CoordinationStep], aborted: bool) -> bool:
        succeeded = sum(1 for step in steps if step.result.success)
        if self.partial_success_threshold is None:
            return not aborted and succeeded == len(plan.steps)
        return succeeded / len(plan.steps) >= self.partial_success_threshold

    async def execute(
        self,
        plan: RoutingPlan,
        context: UserContext,
        on_progress: Optional[ProgressCallback] = None,
    ) -> OrchestrationResult:
        """Run every step of ``plan`` and synthesize the final response."""
        start = time.perf_counter()
        runners = {
            CoordinationStrategy.SEQUENTIAL: self._run_sequential,
            CoordinationStrategy.PARALLEL: self._run_parallel,
            CoordinationStrategy.MIXED: self._run_mixed,
        }

        tracer = get_tracer()
        with tracer.start_as_current_span("orchestration.execute"):
            set_span_attribute("plan.strategy", plan.strategy.value)
            set_span_attribute("plan.steps", len(plan.steps))
            set_span_attribute("plan.primary_agent", plan.primary_agent.value)

            notify_progress(
                on_progress,
                f"Executing {len(plan.steps)} tasks ({plan.strategy.value})...",
                total_steps=len(plan.steps),
            )
            steps, aborted = await runners[plan.strategy](plan, context, on_progress)

            if aborted:
                status = PlanStatus.ABORTED
            elif all(step.result.success for step in steps):
                status = PlanStatus.ALL_SUCCEEDED
            else:
                status = PlanStatus.PARTIAL_FAILURE
            set_span_attribute("plan.status", status.value)
            if status != PlanStatus.ALL_SUCCEEDED:
                set_span_status(StatusCode.ERROR, status.value)

        notify_progress(on_progress, "Synthesizing results...", total_steps=len(plan.steps))
        results = [step.result for step in steps]
        errors = [error for result in results if not result.success for error in result.errors or []]
        if aborted:
            errors.append(
                f"Plan aborted after {len(steps)} of {len(plan.steps)} steps"
            )

        execution_time_ms = (time.perf_counter() - start) * 1000
        outcome = OrchestrationResult(
            success=self._is_success(plan, steps, aborted),
            status=status,
            final_response=synthesize_response(results),
            plan=plan,
            steps=steps,
            errors=errors,
            tokens_used=sum(result.metadata.tokens_used for result in results),
            execution_time_ms=execution_time_ms,
        )
        logger.info(
            "plan_executed",
            strategy=plan.strategy.value,
            status=status.value,
            success=outcome.success,
            steps=len(steps),
            tokens_used=outcome.tokens_used,
            execution_time_ms=round(execution_time_ms, 2),
        )
        return outcome

"""
Specialist base: capability scoring and one execution turn.

A turn binds the caller identity, prompts the reasoning oracle with the task
and the specialist's tools, and consumes the oracle's event stream one round
trip at a time. Every failure inside a turn surfaces as an AgentExecutionError
and is folded into a failed SpecialistResult; ``execute_task`` itself never
raises.
"""
import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from gradpilot.core.logging import get_logger
from gradpilot.core.metrics import record_specialist_task

from .errors import AgentExecutionError
from .identity import RequestIdentity, bind_identity
from .oracle import (
    ExecutionRequest,
    FinishEvent,
    ReasoningOracle,
    TextDeltaEvent,
    TokenUsage,
    ToolCallEvent,
    ToolResultEvent,
)
from .progress import ProgressCallback, notify_progress
from .schema import (
    AgentCapability,
    Complexity,
    ResultMetadata,
    SpecialistId,
    SpecialistResult,
    Task,
    TaskType,
    UserContext,
)
from .tools import Tool, bind_caller_identity

logger = get_logger(__name__)

COMPLEXITY_WEIGHT = {
    Complexity.SIMPLE: 0.6,
    Complexity.MODERATE: 0.8,
    Complexity.COMPLEX: 1.0,
}

# Capabilities covering at most this many task types count as focused.
FOCUSED_CAPABILITY_SIZE = 3
FOCUSED_BONUS = 1.0
BROAD_BONUS = 0.7

DEFAULT_MAX_ROUND_TRIPS = 50


@dataclass
class _Turn:
    text_parts: List[str] = field(default_factory=list)
    tools_used: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    round_trips: int = 0
    truncated: bool = False


class Specialist:
    """A named agent with declared capabilities and tools."""

    def __init__(
        self,
        agent_id: SpecialistId,
        description: str,
        capabilities: Sequence[AgentCapability],
        system_prompt: str,
        oracle: ReasoningOracle,
        tools: Sequence[Tool] = (),
        max_round_trips: int = DEFAULT_MAX_ROUND_TRIPS,
    ):
        if max_round_trips < 1:
            raise ValueError("max_round_trips must be at least 1")
        self.agent_id = agent_id
        self.description = description
        self.capabilities = tuple(capabilities)
        self.system_prompt = system_prompt
        self.oracle = oracle
        self.tools = tuple(tools)
        self.max_round_trips = max_round_trips

    @property
    def name(self) -> str:
        return self.agent_id.value

    def __repr__(self) -> str:
        return f"<Specialist {self.name}>"

    def _capability_for(self, task_type: TaskType) -> Optional[AgentCapability]:
        for capability in self.capabilities:
            if task_type in capability.task_types:
                return capability
        return None

    def can_handle(self, task_type: TaskType) -> bool:
        return self._capability_for(task_type) is not None

    def score(self, task_type: TaskType) -> float:
        """
        Suitability for ``task_type``: complexity weight times specialization bonus.

        Uses the first capability that covers the type; 0.0 if none does.
        """
        capability = self._capability_for(task_type)
        if capability is None:
            return 0.0
        bonus = (
            FOCUSED_BONUS
            if len(capability.task_types) <= FOCUSED_CAPABILITY_SIZE
            else BROAD_BONUS
        )
        return COMPLEXITY_WEIGHT[capability.complexity] * bonus

    def format_task_prompt(self, task: Task) -> str:
        return (
            f"Task Type: {task.type.value}\n"
            f"Description: {task.description}\n"
            f"Priority: {task.priority.value}\n"
            f"Complexity: {task.complexity.value}\n"
            f"Input Data: {json.dumps(task.input, indent=2, default=str)}\n"
            "\n"
            "Please complete this task using your available tools and expertise."
        )

    def build_messages(self, task: Task, context: UserContext) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = [
            {"role": turn.role, "content": turn.content} for turn in context.history
        ]
        messages.append({"role": "user", "content": self.format_task_prompt(task)})
        return messages

    async def execute_task(
        self,
        task: Task,
        context: UserContext,
        on_progress: Optional[ProgressCallback] = None,
    ) -> SpecialistResult:
        start = time.perf_counter()

        def elapsed_ms() -> float:
            return (time.perf_counter() - start) * 1000

        if not self.can_handle(task.type):
            record_specialist_task(self.name, task.type.value, success=False)
            return SpecialistResult.failure(
                task.id,
                [f"{self.name} cannot handle task type {task.type.value}"],
            )

        try:
            turn = await self._run_turn(task, context, on_progress)
        except AgentExecutionError as exc:
            duration_ms = elapsed_ms()
            cause = exc.__cause__ or exc
            logger.error(
                "specialist_task_failed",
                agent=exc.agent,
                task_id=exc.task_id,
                task_type=task.type.value,
                error=str(exc),
                error_type=type(cause).__name__,
                exc_info=True,
            )
            record_specialist_task(self.name, task.type.value, False, duration_ms / 1000)
            return SpecialistResult.failure(task.id, [str(exc)], execution_time_ms=duration_ms)

        duration_ms = elapsed_ms()
        if turn.truncated:
            logger.warning(
                "specialist_round_trip_limit",
                agent=self.name,
                task_id=task.id,
                max_round_trips=self.max_round_trips,
                tokens_used=turn.usage.total_tokens,
            )

        notify_progress(on_progress, f"{self.name} completed {task.type.value}")
        record_specialist_task(self.name, task.type.value, True, duration_ms / 1000)
        logger.info(
            "specialist_task_completed",
            agent=self.name,
            task_id=task.id,
            task_type=task.type.value,
            round_trips=turn.round_trips,
            tools_used=len(set(turn.tools_used)),
            tool_errors=len(turn.errors),
            truncated=turn.truncated,
            duration_ms=round(duration_ms, 2),
        )
        return SpecialistResult(
            task_id=task.id,
            success=True,
            payload="".join(turn.text_parts),
            metadata=ResultMetadata(
                execution_time_ms=duration_ms,
                tools_used=turn.tools_used,
                tokens_used=turn.usage.total_tokens,
                round_trips=turn.round_trips,
                truncated=turn.truncated,
            ),
            errors=turn.errors or None,
        )

    async def _run_turn(
        self,
        task: Task,
        context: UserContext,
        on_progress: Optional[ProgressCallback],
    ) -> _Turn:
        """
        Drive the oracle stream for one task.

        Raises:
            AgentExecutionError: anything inside the turn failed; the original
                exception is chained as ``__cause__``.
        """
        turn = _Turn()
        try:
            with bind_identity(RequestIdentity.from_context(context)) as identity:
                if identity.is_expired():
                    logger.warning("access_token_expired", agent=self.name, task_id=task.id)

                request = ExecutionRequest(
                    system=self.system_prompt,
                    messages=self.build_messages(task, context),
                    tools=[bind_caller_identity(tool) for tool in self.tools],
                    max_round_trips=self.max_round_trips,
                )
                events = self.oracle.stream(request)
                try:
                    async for event in events:
                        if isinstance(event, ToolCallEvent):
                            # The completion that asked for this call is already paid for.
                            if event.usage.total_tokens > turn.usage.total_tokens:
                                turn.usage = event.usage
                            if event.round_trip > self.max_round_trips:
                                turn.truncated = True
                                break
                            turn.round_trips = max(turn.round_trips, event.round_trip)
                            turn.tools_used.append(event.tool_name)
                            notify_progress(
                                on_progress,
                                f"Using {event.tool_name} for {task.type.value}",
                                tool_names=[event.tool_name],
                            )
                        elif isinstance(event, ToolResultEvent):
                            if event.error:
                                turn.errors.append(event.error)
                            notify_progress(
                                on_progress,
                                f"Completed {event.tool_name}",
                                tool_names=[event.tool_name],
                            )
                        elif isinstance(event, TextDeltaEvent):
                            turn.text_parts.append(event.text)
                        elif isinstance(event, FinishEvent):
                            turn.usage = event.usage
                            if event.reason == "round_trip_limit":
                                turn.truncated = True
                finally:
                    aclose = getattr(events, "aclose", None)
                    if aclose is not None:
                        await aclose()
        except Exception as exc:
            message = f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
            raise AgentExecutionError(self.name, task.id, message) from exc
        return turn

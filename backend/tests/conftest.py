"""
Shared fixtures: a scripted reasoning oracle and plan-building helpers.

These fixtures use in-memory stubs only and do NOT perform real HTTP calls.
"""
import asyncio
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pytest

from gradpilot.services.orchestration.errors import ToolError
from gradpilot.services.orchestration.oracle import (
    ExecutionRequest,
    FinishEvent,
    TextDeltaEvent,
    TokenUsage,
    ToolCallEvent,
    ToolResultEvent,
)
from gradpilot.services.orchestration.schema import (
    Complexity,
    Priority,
    Task,
    TaskType,
    UserContext,
)


def task_type_of(request: ExecutionRequest) -> str:
    """Read the task type back out of the formatted task prompt."""
    first_line = request.messages[-1]["content"].splitlines()[0]
    return first_line.split(":", 1)[1].strip()


class ScriptedOracle:
    """
    Oracle stub.

    - classify() returns ``classification`` or raises ``classify_error``
    - stream() replays a per-task-type script of ("text", str) and
      ("tool", name, arguments) steps, actually running the offered tools;
      each round trip costs 15 tokens
    """

    def __init__(
        self,
        classification: Optional[Dict[str, Any]] = None,
        classify_error: Optional[Exception] = None,
        script: Optional[Dict[str, Sequence[Tuple]]] = None,
        delays: Optional[Dict[str, float]] = None,
        failures: Sequence[str] = (),
    ):
        self.classification = classification
        self.classify_error = classify_error
        self.script = script or {}
        self.delays = delays or {}
        self.failures = set(failures)
        self.classify_requests: List[Any] = []
        self.execution_requests: List[ExecutionRequest] = []
        self.events: List[Tuple[str, str]] = []
        self.active = 0
        self.max_active = 0

    async def classify(self, request):
        self.classify_requests.append(request)
        if self.classify_error is not None:
            raise self.classify_error
        return self.classification

    async def stream(self, request: ExecutionRequest):
        task_type = task_type_of(request)
        self.execution_requests.append(request)
        self.events.append(("start", task_type))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            delay = self.delays.get(task_type, 0.0)
            if delay:
                await asyncio.sleep(delay)
            if task_type in self.failures:
                raise RuntimeError(f"oracle failed for {task_type}")

            tools = {tool.name: tool for tool in request.tools}
            round_trip = 0
            for step in self.script.get(task_type, [("text", f"done: {task_type}")]):
                if step[0] == "text":
                    yield TextDeltaEvent(text=step[1])
                    continue
                _, name, arguments = step
                round_trip += 1
                call_id = f"call_{round_trip}"
                yield ToolCallEvent(
                    tool_name=name,
                    call_id=call_id,
                    arguments=arguments,
                    round_trip=round_trip,
                    usage=TokenUsage(input_tokens=10 * round_trip, output_tokens=5 * round_trip),
                )
                try:
                    result, error = await tools[name].run(arguments), None
                except ToolError as exc:
                    result, error = None, str(exc)
                yield ToolResultEvent(tool_name=name, call_id=call_id, result=result, error=error)
            yield FinishEvent(usage=TokenUsage(input_tokens=10, output_tokens=5))
        finally:
            self.active -= 1
            self.events.append(("end", task_type))


@pytest.fixture
def make_oracle():
    return ScriptedOracle


@pytest.fixture
def user_context():
    return UserContext(user_id="user-1", access_token="token-1")


@pytest.fixture
def make_task():
    def factory(
        task_id: str,
        task_type: TaskType,
        dependencies: Sequence[str] = (),
        priority: Priority = Priority.MEDIUM,
        complexity: Complexity = Complexity.MODERATE,
    ) -> Task:
        return Task(
            id=task_id,
            type=task_type,
            description=f"{task_type.value} for: test",
            input={"userMessage": "test"},
            priority=priority,
            dependencies=list(dependencies),
            complexity=complexity,
        )

    return factory

"""
Error taxonomy for the routing / coordination / credential subsystem.

Propagation rules:
- ClassificationError and PlanningError are caught by the orchestration
  service, which switches to the fallback planner.
- AgentExecutionError never escapes a task: specialists convert it into a
  failed SpecialistResult.
- CredentialExhaustedError surfaces to the specialist call that needed a key
  and is reported as a structured failure.
- CredentialRejectedError is raised by the oracle when one key is refused; the
  key is retired and the call moves on to the next key, propagating only once
  the per-call key attempts run out.
- ToolError is reported inside a SpecialistResult's error list.
"""
from typing import Optional


class OrchestrationError(Exception):
    """Base class for orchestration errors."""


class ClassificationError(OrchestrationError):
    """Oracle unreachable or classification response did not match the schema."""

    def __init__(self, message: str, raw_output: Optional[str] = None):
        super().__init__(message)
        self.raw_output = raw_output


class PlanningError(OrchestrationError):
    """A routing plan could not be built (e.g. empty task-type list)."""


class AgentExecutionError(OrchestrationError):
    """Internal specialist fault."""

    def __init__(self, agent: str, task_id: str, message: str):
        super().__init__(message)
        self.agent = agent
        self.task_id = task_id


class CredentialExhaustedError(OrchestrationError):
    """Every credential in the pool is at its daily cap or inactive."""


class CredentialRejectedError(OrchestrationError):
    """The oracle answered but refused one credential (quota spent or key invalid)."""

    def __init__(self, key: str, signal: str, status_code: Optional[int], message: str):
        super().__init__(message)
        self.key = key
        self.signal = signal
        self.status_code = status_code


class CredentialPoolConfigurationError(OrchestrationError):
    """No credential secrets are configured; the pool cannot be built."""


class ToolError(OrchestrationError):
    """A tool rejected its arguments or failed while executing."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(message)
        self.tool_name = tool_name

    def __str__(self) -> str:
        return f"{self.tool_name}: {super().__str__()}"

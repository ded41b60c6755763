"""
Pydantic models for the specialist routing subsystem.

Covers the closed enumerations (task types, specialists, strategies), the
per-request plan objects (Task, RoutingPlan), specialist results and the
coordination log, plus the classification contract returned by the oracle.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Literal, Optional, Tuple

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    computed_field,
    field_validator,
    model_validator,
)

from .errors import ClassificationError


class TaskType(str, Enum):
    GREETING = "greeting"
    CV_ANALYSIS = "cv_analysis"
    PROGRAM_SEARCH = "program_search"
    PROFESSOR_RESEARCH = "professor_research"
    SPREADSHEET_MANAGEMENT = "spreadsheet_management"
    EMAIL_COMPOSITION = "email_composition"
    DOCUMENT_QUERY = "document_query"
    WEB_RESEARCH = "web_research"
    ACADEMIC_SEARCH = "academic_search"
    DATA_ORGANIZATION = "data_organization"
    CREATE_DOCUMENTS = "create_documents"
    APPLICATION_TRACKING = "application_tracking"
    RESPONSE_FORMATTING = "response_formatting"


class TaskIntent(str, Enum):
    GREETING = "greeting"
    ANALYZE_PROFILE = "analyze_profile"
    FIND_PROGRAMS = "find_programs"
    RESEARCH_PROFESSORS = "research_professors"
    ORGANIZE_DATA = "organize_data"
    COMPOSE_EMAIL = "compose_email"
    TRACK_APPLICATIONS = "track_applications"
    GATHER_INFORMATION = "gather_information"
    UPDATE_RECORDS = "update_records"
    CREATE_DOCUMENTS = "create_documents"


class SpecialistId(str, Enum):
    POSTGRAD_APPLICATION = "PostgradApplicationAgent"
    ACADEMIC_RESEARCH = "AcademicResearchAgent"
    COMMUNICATION = "CommunicationAgent"
    DATA_ORGANIZER = "DataOrganizerAgent"


class Complexity(str, Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"

    @property
    def rank(self) -> int:
        return _COMPLEXITY_RANK[self]


_COMPLEXITY_RANK = {
    Complexity.SIMPLE: 0,
    Complexity.MODERATE: 1,
    Complexity.COMPLEX: 2,
}


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class CoordinationStrategy(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    MIXED = "mixed"


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class PlanStatus(str, Enum):
    ALL_SUCCEEDED = "all_succeeded"
    PARTIAL_FAILURE = "partial_failure"
    ABORTED = "aborted"


# ---------------------------------------------------------------------------
# Request context
# ---------------------------------------------------------------------------

class ConversationTurn(BaseModel):
    role: Literal["user", "assistant"]
    content: str
    timestamp: Optional[datetime] = None


class UserContext(BaseModel):
    """Caller identity and prior turns for one request."""

    user_id: str
    access_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    history: List[ConversationTurn] = Field(default_factory=list)

    def to_task_payload(self) -> Dict[str, Any]:
        """Context shared with every step's input. Never includes the access token."""
        return {
            "user_id": self.user_id,
            "history_length": len(self.history),
        }


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------

class Task(BaseModel):
    id: str
    type: TaskType
    description: str
    input: Dict[str, Any] = Field(default_factory=dict)
    priority: Priority = Priority.MEDIUM
    dependencies: List[str] = Field(default_factory=list)
    complexity: Complexity = Complexity.MODERATE


class RoutingPlan(BaseModel):
    """
    Execution blueprint for one request.

    Validated on construction: step ids are unique, each dependency names an
    earlier step, and supporting agents are unique and exclude the primary.
    """

    primary_agent: SpecialistId
    supporting_agents: List[SpecialistId] = Field(default_factory=list)
    strategy: CoordinationStrategy = CoordinationStrategy.SEQUENTIAL
    steps: List[Task] = Field(..., min_length=1)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def complexity(self) -> Complexity:
        return max((step.complexity for step in self.steps), key=lambda c: c.rank)

    @model_validator(mode="after")
    def check_steps(self) -> "RoutingPlan":
        seen: set = set()
        for step in self.steps:
            if step.id in seen:
                raise ValueError(f"duplicate step id: {step.id}")
            for dependency in step.dependencies:
                if dependency not in seen:
                    raise ValueError(
                        f"step {step.id} depends on {dependency}, which is not an earlier step"
                    )
            seen.add(step.id)

        if self.primary_agent in self.supporting_agents:
            raise ValueError("supporting_agents must not include the primary agent")
        if len(set(self.supporting_agents)) != len(self.supporting_agents):
            raise ValueError("supporting_agents must not contain duplicates")
        return self


# ---------------------------------------------------------------------------
# Specialists and results
# ---------------------------------------------------------------------------

class AgentCapability(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    description: str
    task_types: FrozenSet[TaskType]
    complexity: Complexity
    tools: Tuple[str, ...] = ()


class ResultMetadata(BaseModel):
    execution_time_ms: float = 0.0
    tools_used: List[str] = Field(default_factory=list)
    tokens_used: int = 0
    round_trips: int = 0
    truncated: bool = False

    @field_validator("tools_used")
    @classmethod
    def dedupe_tools(cls, value: List[str]) -> List[str]:
        return list(dict.fromkeys(value))


class SpecialistResult(BaseModel):
    task_id: str
    success: bool
    payload: Any = None
    metadata: ResultMetadata = Field(default_factory=ResultMetadata)
    errors: Optional[List[str]] = None

    @model_validator(mode="after")
    def failed_results_carry_errors(self) -> "SpecialistResult":
        if not self.success and not self.errors:
            self.errors = ["Unknown specialist error"]
        return self

    @classmethod
    def failure(
        cls,
        task_id: str,
        errors: List[str],
        execution_time_ms: float = 0.0,
    ) -> "SpecialistResult":
        return cls(
            task_id=task_id,
            success=False,
            metadata=ResultMetadata(execution_time_ms=execution_time_ms),
            errors=errors,
        )


class CoordinationStep(BaseModel):
    """One entry of the durable execution log."""

    id: str
    agent_name: str
    task: Task
    result: SpecialistResult
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    dependencies: List[str] = Field(default_factory=list)
    status: StepStatus = StepStatus.PENDING


class ProgressUpdate(BaseModel):
    message: str
    step_index: Optional[int] = None
    total_steps: Optional[int] = None
    tool_names: Optional[List[str]] = None


class OrchestrationResult(BaseModel):
    success: bool
    status: PlanStatus
    final_response: str
    plan: Optional[RoutingPlan] = None
    steps: List[CoordinationStep] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    tokens_used: int = 0
    execution_time_ms: float = 0.0
    used_fallback: bool = False


# ---------------------------------------------------------------------------
# Classification contract
# ---------------------------------------------------------------------------

class TaskClassification(BaseModel):
    """
    Structured output of the intent classifier.

    Schema sent to the oracle:
    {
      "intent": "compose_email",
      "task_types": ["email_composition", "professor_research"],
      "complexity": "moderate",
      "requires_multiple_agents": true,
      "entities": ["MIT", "Prof. Smith"],
      "strategy": "sequential",
      "rationale": "..."
    }
    """

    intent: TaskIntent
    task_types: List[TaskType] = Field(
        default_factory=list,
        description="Ordered task types, primary first",
    )
    complexity: Complexity = Complexity.MODERATE
    requires_multiple_agents: bool = False
    entities: List[str] = Field(default_factory=list)
    strategy: CoordinationStrategy = CoordinationStrategy.SEQUENTIAL
    rationale: str = ""


def validate_classification_payload(payload: Any) -> TaskClassification:
    """
    Validate the oracle's raw classification object.

    Raises:
        ClassificationError if validation fails.
    """
    try:
        return TaskClassification.model_validate(payload)
    except ValidationError as exc:
        raise ClassificationError(f"Invalid classification payload: {exc}") from exc

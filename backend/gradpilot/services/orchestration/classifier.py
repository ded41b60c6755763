"""
Intent classifier.

Responsibilities:
- Ask the reasoning oracle for a structured TaskClassification
- Enforce the classification schema via pydantic validation
- Map ambiguous input to a low-risk generic classification

Fallback routing on failure is handled by the OrchestrationService.
"""
from typing import Optional, Sequence

from gradpilot.core.logging import get_logger

from .errors import ClassificationError
from .oracle import ClassificationRequest, ReasoningOracle
from .schema import (
    Complexity,
    ConversationTurn,
    CoordinationStrategy,
    TaskClassification,
    TaskIntent,
    TaskType,
    UserContext,
    validate_classification_payload,
)

logger = get_logger(__name__)

# Prior turns quoted in the classification prompt.
RECENT_TURNS = 2

CLASSIFIER_SYSTEM_PROMPT = (
    "You are a task analysis expert for a postgraduate application assistant.\n\n"
    "Classify the user's request for routing to specialist agents:\n"
    "- PostgradApplicationAgent: greetings, CV analysis, program matching, "
    "questions about uploaded documents\n"
    "- AcademicResearchAgent: professor discovery, literature search, web research\n"
    "- CommunicationAgent: email drafting, academic documents\n"
    "- DataOrganizerAgent: spreadsheets, data organization, application tracking\n\n"
    "Routing rules:\n"
    "1. Simple greetings (\"hi\", \"hello\") use intent=greeting and task type greeting.\n"
    "2. Simple factual questions (\"where is X?\") use task type web_research.\n"
    "3. Requests about professors or papers use professor_research or academic_search.\n"
    "4. Requests that need several specialists list one task type per piece of work, "
    "primary first.\n\n"
    "Choose strategy=sequential when later work needs earlier results, parallel when "
    "the pieces are independent, mixed when several pieces build on the first.\n"
    "Respond with a single JSON object matching the schema. No extra text."
)

CLASSIFICATION_SCHEMA = TaskClassification.model_json_schema()


def generic_classification(rationale: str) -> TaskClassification:
    """Low-risk default for input that cannot be classified meaningfully."""
    return TaskClassification(
        intent=TaskIntent.GATHER_INFORMATION,
        task_types=[TaskType.DOCUMENT_QUERY],
        complexity=Complexity.SIMPLE,
        requires_multiple_agents=False,
        entities=[],
        strategy=CoordinationStrategy.SEQUENTIAL,
        rationale=rationale,
    )


class IntentClassifier:
    def __init__(self, oracle: ReasoningOracle):
        self.oracle = oracle

    def build_prompt(self, message: str, history: Sequence[ConversationTurn]) -> str:
        lines = [
            f'Analyze this user request: "{message}"',
            "",
            f"Context: User has {len(history)} previous messages.",
        ]
        recent = [turn.content for turn in history[-RECENT_TURNS:]]
        if recent:
            lines.append("Recent context: " + " ".join(recent))
        return "\n".join(lines)

    async def classify(
        self,
        message: str,
        history: Optional[Sequence[ConversationTurn]] = None,
        context: Optional[UserContext] = None,
    ) -> TaskClassification:
        """
        Classify a user message.

        Raises:
            ClassificationError if the oracle is unreachable or its response
            does not conform to the classification schema.
        """
        if history is None:
            history = context.history if context is not None else []

        if not message or not message.strip():
            logger.info("classification_generic", reason="blank_message")
            return generic_classification("Blank message")

        request = ClassificationRequest(
            system=CLASSIFIER_SYSTEM_PROMPT,
            messages=[{"role": "user", "content": self.build_prompt(message, history)}],
            schema=CLASSIFICATION_SCHEMA,
        )
        try:
            raw = await self.oracle.classify(request)
        except Exception as exc:
            logger.warning(
                "classification_oracle_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise ClassificationError(f"Classification failed: {exc}") from exc

        try:
            classification = validate_classification_payload(raw)
        except ClassificationError as exc:
            exc.raw_output = str(raw)
            logger.warning("classification_schema_invalid", error=str(exc))
            raise

        if not classification.task_types:
            logger.info("classification_generic", reason="no_task_types")
            return generic_classification(classification.rationale or "No task types returned")

        logger.info(
            "classification_completed",
            intent=classification.intent.value,
            task_types=[task_type.value for task_type in classification.task_types],
            complexity=classification.complexity.value,
            strategy=classification.strategy.value,
        )
        return classification

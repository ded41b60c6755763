"""
Keyword-driven routing used when classification or planning fails.

Pure string matching over the lower-cased, trimmed message; no oracle calls.
Always produces a single-step sequential plan.
"""
import uuid
from typing import Optional, Tuple

from gradpilot.core.logging import get_logger

from .schema import (
    Complexity,
    CoordinationStrategy,
    Priority,
    RoutingPlan,
    SpecialistId,
    Task,
    TaskType,
    UserContext,
)

logger = get_logger(__name__)

GREETINGS = ("hi", "hello", "hey", "hiya", "good morning", "good afternoon")
FACTUAL_STARTERS = ("where is", "what is", "when is", "how is", "who is")

# Checked in order; first group with a matching keyword wins.
KEYWORD_ROUTES: Tuple[Tuple[str, Tuple[str, ...], SpecialistId, TaskType], ...] = (
    ("email", ("email", "draft"), SpecialistId.COMMUNICATION, TaskType.EMAIL_COMPOSITION),
    (
        "spreadsheet",
        ("spreadsheet", "sheet"),
        SpecialistId.DATA_ORGANIZER,
        TaskType.SPREADSHEET_MANAGEMENT,
    ),
    ("research", ("research", "find"), SpecialistId.ACADEMIC_RESEARCH, TaskType.WEB_RESEARCH),
    (
        "program",
        ("program", "university"),
        SpecialistId.POSTGRAD_APPLICATION,
        TaskType.PROGRAM_SEARCH,
    ),
    ("cv", ("cv", "resume"), SpecialistId.POSTGRAD_APPLICATION, TaskType.CV_ANALYSIS),
)


def _is_greeting(text: str) -> bool:
    return any(text == greeting or text.startswith(greeting + " ") for greeting in GREETINGS)


def _is_factual_question(text: str) -> bool:
    return any(text.startswith(starter) for starter in FACTUAL_STARTERS)


class FallbackPlanner:
    """Deterministic emergency routing. ``plan`` never raises."""

    def plan(self, message: str, context: Optional[UserContext] = None) -> RoutingPlan:
        text = (message or "").strip().lower()
        step_input = {"userMessage": message or ""}
        if context is not None:
            step_input["context"] = context.to_task_payload()

        if _is_greeting(text):
            route, agent, task_type, complexity = (
                "greeting",
                SpecialistId.POSTGRAD_APPLICATION,
                TaskType.GREETING,
                Complexity.SIMPLE,
            )
            description = f"Handle greeting: {message}"
        elif _is_factual_question(text):
            route, agent, task_type, complexity = (
                "factual",
                SpecialistId.ACADEMIC_RESEARCH,
                TaskType.WEB_RESEARCH,
                Complexity.SIMPLE,
            )
            description = f"Answer factual question: {message}"
        else:
            route, agent, task_type = (
                "default",
                SpecialistId.POSTGRAD_APPLICATION,
                TaskType.DOCUMENT_QUERY,
            )
            for name, keywords, keyword_agent, keyword_type in KEYWORD_ROUTES:
                if any(keyword in text for keyword in keywords):
                    route, agent, task_type = name, keyword_agent, keyword_type
                    break
            complexity = Complexity.MODERATE
            description = f"Fallback routing: {message}"

        logger.info("fallback_plan_created", route=route, agent=agent.value, task_type=task_type.value)
        return RoutingPlan(
            primary_agent=agent,
            supporting_agents=[],
            strategy=CoordinationStrategy.SEQUENTIAL,
            steps=[
                Task(
                    id=f"{route}_{uuid.uuid4().hex[:8]}",
                    type=task_type,
                    description=description,
                    input=step_input,
                    priority=Priority.MEDIUM,
                    dependencies=[],
                    complexity=complexity,
                )
            ],
        )

"""
Unit tests for the orchestration data model.
"""
import pytest
from pydantic import ValidationError

from gradpilot.services.orchestration.errors import ClassificationError
from gradpilot.services.orchestration.schema import (
    Complexity,
    CoordinationStrategy,
    ResultMetadata,
    RoutingPlan,
    SpecialistId,
    SpecialistResult,
    TaskType,
    UserContext,
    validate_classification_payload,
)


def test_plan_complexity_is_max_over_steps(make_task):
    plan = RoutingPlan(
        primary_agent=SpecialistId.POSTGRAD_APPLICATION,
        steps=[
            make_task("a", TaskType.GREETING, complexity=Complexity.SIMPLE),
            make_task("b", TaskType.CV_ANALYSIS, ["a"], complexity=Complexity.COMPLEX),
            make_task("c", TaskType.DOCUMENT_QUERY, ["b"], complexity=Complexity.MODERATE),
        ],
    )
    assert plan.complexity == Complexity.COMPLEX
    assert plan.model_dump()["complexity"] == Complexity.COMPLEX


def test_plan_rejects_duplicate_step_ids(make_task):
    with pytest.raises(ValidationError, match="duplicate step id"):
        RoutingPlan(
            primary_agent=SpecialistId.POSTGRAD_APPLICATION,
            steps=[make_task("a", TaskType.GREETING), make_task("a", TaskType.CV_ANALYSIS)],
        )


def test_plan_rejects_forward_dependencies(make_task):
    with pytest.raises(ValidationError, match="not an earlier step"):
        RoutingPlan(
            primary_agent=SpecialistId.POSTGRAD_APPLICATION,
            steps=[
                make_task("a", TaskType.GREETING, ["b"]),
                make_task("b", TaskType.CV_ANALYSIS),
            ],
        )


def test_plan_rejects_primary_in_supporting_agents(make_task):
    with pytest.raises(ValidationError, match="primary agent"):
        RoutingPlan(
            primary_agent=SpecialistId.POSTGRAD_APPLICATION,
            supporting_agents=[SpecialistId.POSTGRAD_APPLICATION],
            steps=[make_task("a", TaskType.GREETING)],
        )


def test_plan_requires_steps():
    with pytest.raises(ValidationError):
        RoutingPlan(primary_agent=SpecialistId.POSTGRAD_APPLICATION, steps=[])


def test_failed_result_always_carries_errors():
    result = SpecialistResult(task_id="t", success=False)
    assert result.errors == ["Unknown specialist error"]


def test_tools_used_are_deduplicated_in_order():
    metadata = ResultMetadata(tools_used=["webSearch", "extractText", "webSearch"])
    assert metadata.tools_used == ["webSearch", "extractText"]


def test_task_payload_never_includes_access_token():
    context = UserContext(user_id="u1", access_token="secret-token")
    payload = context.to_task_payload()
    assert payload == {"user_id": "u1", "history_length": 0}
    assert "secret-token" not in str(payload)


def test_classification_payload_validation():
    classification = validate_classification_payload({
        "intent": "compose_email",
        "task_types": ["professor_research", "email_composition"],
        "complexity": "complex",
        "requires_multiple_agents": True,
        "entities": ["MIT"],
        "strategy": "sequential",
        "rationale": "find then write",
    })
    assert classification.task_types == [TaskType.PROFESSOR_RESEARCH, TaskType.EMAIL_COMPOSITION]
    assert classification.strategy == CoordinationStrategy.SEQUENTIAL


def test_classification_payload_rejects_unknown_task_type():
    with pytest.raises(ClassificationError):
        validate_classification_payload({"intent": "greeting", "task_types": ["juggling"]})

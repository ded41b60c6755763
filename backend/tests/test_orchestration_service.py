"""
Tests for the end-to-end orchestration service.
"""
import pytest

from gradpilot.services.orchestration.schema import (
    CoordinationStrategy,
    PlanStatus,
    SpecialistId,
    TaskType,
)
from gradpilot.services.orchestration.service import OrchestrationService

PROFESSOR_EMAIL = {
    "intent": "research_professors",
    "task_types": ["professor_research", "email_composition"],
    "complexity": "complex",
    "requires_multiple_agents": True,
    "entities": ["ETH Zurich"],
    "strategy": "sequential",
    "rationale": "find then write",
}


@pytest.mark.asyncio
async def test_classified_request_runs_plan(make_oracle, user_context):
    oracle = make_oracle(classification=PROFESSOR_EMAIL)
    service = OrchestrationService.from_oracle(oracle)

    result = await service.handle("find robotics professors at ETH and email them", user_context)

    assert result.success
    assert not result.used_fallback
    assert result.plan.primary_agent == SpecialistId.ACADEMIC_RESEARCH
    assert result.plan.supporting_agents == [SpecialistId.COMMUNICATION]
    assert [step.task.type for step in result.steps] == [
        TaskType.PROFESSOR_RESEARCH, TaskType.EMAIL_COMPOSITION
    ]
    assert result.final_response == "done: professor_research\n\ndone: email_composition"


@pytest.mark.asyncio
async def test_classification_failure_uses_fallback(make_oracle, user_context):
    oracle = make_oracle(classify_error=ConnectionError("oracle down"))
    service = OrchestrationService.from_oracle(oracle)

    result = await service.handle("please draft an email to my advisor", user_context)

    assert result.success
    assert result.used_fallback
    assert result.plan.primary_agent == SpecialistId.COMMUNICATION
    assert result.plan.strategy == CoordinationStrategy.SEQUENTIAL
    assert result.final_response == "done: email_composition"


@pytest.mark.asyncio
async def test_invalid_classification_uses_fallback(make_oracle, user_context):
    oracle = make_oracle(classification={"intent": "teleport", "task_types": ["greeting"]})
    service = OrchestrationService.from_oracle(oracle)

    plan, used_fallback = await service.route("hello", user_context)

    assert used_fallback
    assert plan.steps[0].type == TaskType.GREETING


@pytest.mark.asyncio
async def test_handle_never_raises(make_oracle, user_context):
    class BrokenCoordinator:
        async def execute(self, plan, context, on_progress=None):
            raise RuntimeError("coordinator exploded")

    service = OrchestrationService.from_oracle(make_oracle(classification=PROFESSOR_EMAIL))
    service.coordinator = BrokenCoordinator()

    result = await service.handle("anything", user_context)

    assert not result.success
    assert result.status == PlanStatus.ABORTED
    assert result.errors == ["RuntimeError: coordinator exploded"]
    assert "try again" in result.final_response


@pytest.mark.asyncio
async def test_progress_covers_whole_request(make_oracle, user_context):
    updates = []
    service = OrchestrationService.from_oracle(make_oracle(classification=PROFESSOR_EMAIL))

    await service.handle("find professors", user_context, on_progress=updates.append)

    messages = [update.message for update in updates]
    assert messages[0] == "Getting started..."
    assert messages[1] == "Got it! Starting work now..."
    assert messages[-1] == "Synthesizing results..."

"""
Routing planner: turns a TaskClassification into a RoutingPlan.

1. The first task type's table entry is the primary agent.
2. The remaining task types map to supporting agents (primary dropped,
   duplicates removed, order kept).
3. One step per task type, in classification order, sharing the message,
   entities and caller context.

Step dependencies follow the coordination strategy:
- sequential: each step depends on the one before it
- parallel: no dependencies
- mixed: every step after the first depends on the first
"""
import uuid
from typing import Dict, List, Optional

from pydantic import ValidationError

from gradpilot.core.logging import get_logger
from gradpilot.core.metrics import record_routing_plan

from .errors import PlanningError
from .registry import agent_for
from .schema import (
    CoordinationStrategy,
    Priority,
    RoutingPlan,
    SpecialistId,
    Task,
    TaskClassification,
    UserContext,
)

logger = get_logger(__name__)


def _dependencies(strategy: CoordinationStrategy, index: int, ids: List[str]) -> List[str]:
    if index == 0 or strategy == CoordinationStrategy.PARALLEL:
        return []
    if strategy == CoordinationStrategy.MIXED:
        return [ids[0]]
    return [ids[index - 1]]


class RoutingPlanner:
    def plan(
        self,
        classification: TaskClassification,
        message: str,
        context: Optional[UserContext] = None,
    ) -> RoutingPlan:
        """
        Build the plan for one request.

        Raises:
            PlanningError if the classification has no task types or the
            resulting plan is invalid.
        """
        task_types = classification.task_types
        if not task_types:
            raise PlanningError("Classification contains no task types")

        primary = agent_for(task_types[0])
        supporting: Dict[SpecialistId, None] = {}
        for task_type in task_types[1:]:
            agent = agent_for(task_type)
            if agent != primary:
                supporting[agent] = None

        plan_id = uuid.uuid4().hex[:8]
        ids = [f"task_{plan_id}_{index}" for index in range(len(task_types))]
        shared_input = {
            "userMessage": message,
            "entities": list(classification.entities),
        }
        if context is not None:
            shared_input["context"] = context.to_task_payload()

        steps = [
            Task(
                id=ids[index],
                type=task_type,
                description=f"{task_type.value} for: {message}",
                input=dict(shared_input),
                priority=Priority.HIGH if index == 0 else Priority.MEDIUM,
                dependencies=_dependencies(classification.strategy, index, ids),
                complexity=classification.complexity,
            )
            for index, task_type in enumerate(task_types)
        ]

        try:
            plan = RoutingPlan(
                primary_agent=primary,
                supporting_agents=list(supporting),
                strategy=classification.strategy,
                steps=steps,
            )
        except ValidationError as exc:
            raise PlanningError(f"Invalid routing plan: {exc}") from exc

        record_routing_plan(plan.strategy.value, "classifier")
        logger.info(
            "routing_plan_created",
            primary_agent=plan.primary_agent.value,
            supporting_agents=[agent.value for agent in plan.supporting_agents],
            strategy=plan.strategy.value,
            steps=len(plan.steps),
        )
        return plan

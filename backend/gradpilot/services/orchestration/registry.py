"""
Specialist registry and the static task-type routing table.
"""
from typing import Dict, Iterator, Optional, Sequence

from gradpilot.core.logging import get_logger

from .schema import SpecialistId, TaskType
from .specialist import Specialist

logger = get_logger(__name__)

TASK_AGENT_TABLE: Dict[TaskType, SpecialistId] = {
    TaskType.GREETING: SpecialistId.POSTGRAD_APPLICATION,
    TaskType.CV_ANALYSIS: SpecialistId.POSTGRAD_APPLICATION,
    TaskType.PROGRAM_SEARCH: SpecialistId.POSTGRAD_APPLICATION,
    TaskType.DOCUMENT_QUERY: SpecialistId.POSTGRAD_APPLICATION,
    TaskType.RESPONSE_FORMATTING: SpecialistId.POSTGRAD_APPLICATION,
    TaskType.PROFESSOR_RESEARCH: SpecialistId.ACADEMIC_RESEARCH,
    TaskType.WEB_RESEARCH: SpecialistId.ACADEMIC_RESEARCH,
    TaskType.ACADEMIC_SEARCH: SpecialistId.ACADEMIC_RESEARCH,
    TaskType.SPREADSHEET_MANAGEMENT: SpecialistId.DATA_ORGANIZER,
    TaskType.DATA_ORGANIZATION: SpecialistId.DATA_ORGANIZER,
    TaskType.APPLICATION_TRACKING: SpecialistId.DATA_ORGANIZER,
    TaskType.EMAIL_COMPOSITION: SpecialistId.COMMUNICATION,
    TaskType.CREATE_DOCUMENTS: SpecialistId.COMMUNICATION,
}

_unmapped = [task_type.value for task_type in TaskType if task_type not in TASK_AGENT_TABLE]
if _unmapped:
    raise RuntimeError(f"task types without a routing entry: {', '.join(_unmapped)}")


def agent_for(task_type: TaskType) -> SpecialistId:
    return TASK_AGENT_TABLE[task_type]


class SpecialistRegistry:
    """Ordered collection of specialists; declaration order breaks ties."""

    def __init__(self, specialists: Sequence[Specialist]):
        self._specialists = list(specialists)
        self._by_id: Dict[SpecialistId, Specialist] = {}
        for specialist in self._specialists:
            if specialist.agent_id in self._by_id:
                raise ValueError(f"specialist registered twice: {specialist.name}")
            self._by_id[specialist.agent_id] = specialist

    def __iter__(self) -> Iterator[Specialist]:
        return iter(self._specialists)

    def __len__(self) -> int:
        return len(self._specialists)

    def get(self, agent_id: SpecialistId) -> Optional[Specialist]:
        return self._by_id.get(agent_id)

    def select(self, task_type: TaskType) -> Optional[Specialist]:
        """
        Best specialist for ``task_type``, or None if nobody handles it.

        Highest score wins; ties go to the routing table's agent, then to the
        earliest declared specialist.
        """
        preferred = TASK_AGENT_TABLE[task_type]
        best: Optional[Specialist] = None
        best_key = None
        for position, specialist in enumerate(self._specialists):
            if not specialist.can_handle(task_type):
                continue
            key = (specialist.score(task_type), specialist.agent_id == preferred, -position)
            if best_key is None or key > best_key:
                best, best_key = specialist, key

        if best is None:
            logger.warning("no_specialist_for_task_type", task_type=task_type.value)
        return best

"""
The four built-in specialists.

Tool implementations live outside this service; each specialist declares the
tool names it uses and receives whichever of them the tool registry provides.
"""
import dataclasses
from typing import List, Optional

from .oracle import ReasoningOracle
from .registry import SpecialistRegistry
from .schema import AgentCapability, Complexity, SpecialistId, TaskType
from .specialist import DEFAULT_MAX_ROUND_TRIPS, Specialist
from .tools import Tool, ToolRegistry

MULTI_TENANT_TOOLS = frozenset({
    "queryDocumentMultiUserTool",
    "listUserDocumentsTool",
    "getUserDocumentDetailsTool",
    "deleteUserDocumentTool",
})


def _mark_tenancy(tool: Tool) -> Tool:
    if tool.name in MULTI_TENANT_TOOLS and not tool.multi_tenant:
        return dataclasses.replace(tool, multi_tenant=True)
    return tool


def _capability(name, description, task_types, complexity, tools=()) -> AgentCapability:
    return AgentCapability(
        name=name,
        description=description,
        task_types=frozenset(task_types),
        complexity=complexity,
        tools=tuple(tools),
    )


POSTGRAD_CAPABILITIES = (
    _capability(
        "User Interaction & Greetings",
        "Handle greetings and initial user interactions",
        [TaskType.GREETING],
        Complexity.SIMPLE,
    ),
    _capability(
        "CV Analysis & Profile Matching",
        "Analyze academic CVs and match with suitable programs",
        [TaskType.CV_ANALYSIS, TaskType.PROGRAM_SEARCH],
        Complexity.COMPLEX,
        ["queryDocumentMultiUserTool", "listUserDocumentsTool"],
    ),
    _capability(
        "Application Strategy & Planning",
        "Create application strategies and timelines",
        [TaskType.APPLICATION_TRACKING, TaskType.PROGRAM_SEARCH],
        Complexity.COMPLEX,
        ["webSearch", "extractText", "fileSearch"],
    ),
    _capability(
        "Document Analysis & Insights",
        "Extract insights from academic documents and research papers",
        [TaskType.DOCUMENT_QUERY, TaskType.CV_ANALYSIS],
        Complexity.MODERATE,
        ["queryDocumentMultiUserTool", "getUserDocumentDetailsTool"],
    ),
    _capability(
        "Response Formatting",
        "Present results from other specialists as a clear reply",
        [TaskType.RESPONSE_FORMATTING],
        Complexity.SIMPLE,
    ),
)

ACADEMIC_RESEARCH_CAPABILITIES = (
    _capability(
        "Professor Research & Contact Discovery",
        "Find professors with verified emails and research alignment",
        [TaskType.PROFESSOR_RESEARCH, TaskType.ACADEMIC_SEARCH],
        Complexity.COMPLEX,
        ["webSearch", "extractText", "searchAuthors", "searchPapers"],
    ),
    _capability(
        "Academic Literature Research",
        "Search and analyze academic papers, authors and research trends",
        [TaskType.ACADEMIC_SEARCH, TaskType.WEB_RESEARCH],
        Complexity.COMPLEX,
        ["searchPapers", "searchAuthors", "getPaper", "getAuthor"],
    ),
    _capability(
        "University & Program Research",
        "Research universities, programs and academic opportunities",
        [TaskType.WEB_RESEARCH, TaskType.PROGRAM_SEARCH],
        Complexity.MODERATE,
        ["webSearch", "extractText", "extractLinks"],
    ),
)

COMMUNICATION_CAPABILITIES = (
    _capability(
        "Professional Email Composition",
        "Draft personalized academic and professional emails",
        [TaskType.EMAIL_COMPOSITION],
        Complexity.COMPLEX,
        ["createDraft", "sendEmail", "replyToEmail"],
    ),
    _capability(
        "Academic Document Creation",
        "Create and format academic documents, letters and proposals",
        [TaskType.CREATE_DOCUMENTS],
        Complexity.MODERATE,
        ["createDocument", "insertText", "formatText"],
    ),
    _capability(
        "Progress Tracking Documentation",
        "Create progress tracking documents for the application journey",
        [TaskType.CREATE_DOCUMENTS, TaskType.APPLICATION_TRACKING],
        Complexity.MODERATE,
        ["createDocument", "insertText", "formatText", "insertTable"],
    ),
)

DATA_ORGANIZER_CAPABILITIES = (
    _capability(
        "Spreadsheet Management & Tracking",
        "Create and maintain application tracking spreadsheets",
        [TaskType.SPREADSHEET_MANAGEMENT, TaskType.APPLICATION_TRACKING],
        Complexity.COMPLEX,
        ["createSpreadsheet", "writeCells", "appendCells", "readCells"],
    ),
    _capability(
        "Data Organization & Structure",
        "Organize application data with consistent formatting and structure",
        [TaskType.DATA_ORGANIZATION, TaskType.APPLICATION_TRACKING],
        Complexity.MODERATE,
        ["formatCells", "addSheet", "deleteRowsColumns", "createChart"],
    ),
    _capability(
        "Document Management & Filing",
        "Organize and manage application documents and records",
        [TaskType.DATA_ORGANIZATION, TaskType.CREATE_DOCUMENTS],
        Complexity.MODERATE,
        ["createDocument", "listUserDocumentsTool", "deleteUserDocumentTool"],
    ),
)

_PROMPT_FOOTER = (
    "Use your tools when they help. Reply to the user directly in clear, "
    "friendly language without mentioning internal agents or tool names."
)

SPECIALIST_DEFINITIONS = (
    (
        SpecialistId.POSTGRAD_APPLICATION,
        "Guides postgraduate applicants through profiles, programs and documents",
        POSTGRAD_CAPABILITIES,
        "You are a postgraduate application advisor. You greet users, analyze "
        "their CVs and uploaded documents, and match them with suitable programs. "
        + _PROMPT_FOOTER,
    ),
    (
        SpecialistId.ACADEMIC_RESEARCH,
        "Finds professors, papers and program information",
        ACADEMIC_RESEARCH_CAPABILITIES,
        "You are an academic research assistant. You find professors whose work "
        "aligns with the user's interests, search the literature, and research "
        "universities and programs. Only report contact details you verified. "
        + _PROMPT_FOOTER,
    ),
    (
        SpecialistId.COMMUNICATION,
        "Drafts outreach emails and academic documents",
        COMMUNICATION_CAPABILITIES,
        "You are an academic communication specialist. You draft personalized, "
        "professional emails and documents for postgraduate applicants. "
        + _PROMPT_FOOTER,
    ),
    (
        SpecialistId.DATA_ORGANIZER,
        "Builds and maintains application tracking spreadsheets",
        DATA_ORGANIZER_CAPABILITIES,
        "You are a data organization specialist. You create and maintain "
        "spreadsheets and records that track the user's applications. "
        + _PROMPT_FOOTER,
    ),
)


def build_specialists(
    oracle: ReasoningOracle,
    tool_registry: Optional[ToolRegistry] = None,
    max_round_trips: int = DEFAULT_MAX_ROUND_TRIPS,
) -> List[Specialist]:
    tool_registry = tool_registry or ToolRegistry()
    specialists = []
    for agent_id, description, capabilities, system_prompt in SPECIALIST_DEFINITIONS:
        tool_names = [name for capability in capabilities for name in capability.tools]
        specialists.append(
            Specialist(
                agent_id=agent_id,
                description=description,
                capabilities=capabilities,
                system_prompt=system_prompt,
                oracle=oracle,
                tools=[_mark_tenancy(tool) for tool in tool_registry.resolve(tool_names)],
                max_round_trips=max_round_trips,
            )
        )
    return specialists


def build_default_registry(
    oracle: ReasoningOracle,
    tool_registry: Optional[ToolRegistry] = None,
    max_round_trips: int = DEFAULT_MAX_ROUND_TRIPS,
) -> SpecialistRegistry:
    return SpecialistRegistry(build_specialists(oracle, tool_registry, max_round_trips))

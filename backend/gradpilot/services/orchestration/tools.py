"""
Tool contract shared by specialists and the reasoning oracle.

A tool is a name, a JSON-schema parameter declaration and an async executor.
Tools flagged ``multi_tenant`` operate on one caller's private data; before a
specialist offers them to the oracle they are wrapped so the bound caller's
``user_id`` overrides whatever the oracle supplied.
"""
import dataclasses
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from gradpilot.core.logging import get_logger

from .errors import ToolError
from .identity import current_identity

logger = get_logger(__name__)

ToolExecutor = Callable[[Dict[str, Any]], Awaitable[Any]]


@dataclass(frozen=True)
class Tool:
    name: str
    description: str
    execute: ToolExecutor
    parameters: Dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    multi_tenant: bool = False

    def declaration(self) -> Dict[str, Any]:
        """OpenAI-style function declaration sent to the oracle."""
        parameters = self.parameters
        if self.multi_tenant:
            # The caller id is injected, so it is hidden from the oracle.
            properties = {
                k: v for k, v in parameters.get("properties", {}).items() if k != "user_id"
            }
            required = [r for r in parameters.get("required", []) if r != "user_id"]
            parameters = {**parameters, "properties": properties, "required": required}
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": parameters,
            },
        }

    async def run(self, arguments: Dict[str, Any]) -> Any:
        """Execute the tool; any failure surfaces as ToolError."""
        try:
            return await self.execute(arguments)
        except ToolError:
            raise
        except Exception as exc:
            raise ToolError(self.name, f"{type(exc).__name__}: {exc}") from exc


def bind_caller_identity(tool: Tool) -> Tool:
    """Wrap a multi-tenant tool so the bound caller id is always injected."""
    if not tool.multi_tenant:
        return tool

    async def execute(arguments: Dict[str, Any]) -> Any:
        identity = current_identity()
        if identity is None:
            raise ToolError(tool.name, "no caller identity bound for multi-tenant tool")
        supplied = arguments.get("user_id")
        if supplied is not None and supplied != identity.user_id:
            logger.warning(
                "tool_user_id_overridden",
                tool=tool.name,
                supplied_user_id=supplied,
            )
        return await tool.execute({**arguments, "user_id": identity.user_id})

    return dataclasses.replace(tool, execute=execute)


class ToolRegistry:
    """Name-indexed catalog of tools available to specialists."""

    def __init__(self, tools: Iterable[Tool] = ()):
        self._tools: Dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"tool already registered: {tool.name}")
        self._tools[tool.name] = tool

    def get(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def resolve(self, names: Iterable[str]) -> List[Tool]:
        """Tools for the given names, in order, skipping names not registered."""
        resolved: List[Tool] = []
        for name in dict.fromkeys(names):
            tool = self._tools.get(name)
            if tool is None:
                logger.debug("tool_not_registered", tool=name)
                continue
            resolved.append(tool)
        return resolved

"""Tool registry.

Tools are opaque, schema-described units: a name, a description shown to
the model, a JSON Schema for the input and an ``execute`` callable. The
registry supplies lookups for the dispatcher and the tool list sent to the
provider.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping, Sequence

if TYPE_CHECKING:
    from ..orchestration.file_store import TransactionalFileStore
    from ..orchestration.types import CancellationToken

__all__ = [
    "ToolContext",
    "ToolDefinition",
    "ToolExecutor",
    "ToolRegistry",
    "DEFAULT_PATH_KEYS",
]

LOGGER = logging.getLogger(__name__)

# Argument names that identify the file a tool operates on.
DEFAULT_PATH_KEYS: tuple[str, ...] = ("path", "TargetFile", "targetFile", "file", "filePath", "file_path")


# -----------------------------------------------------------------------------
# Tool Types
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class ToolContext:
    """Per-invocation context handed to a tool's ``execute`` callable.

    Attributes:
        call_id: Identifier of the invocation being executed.
        file_store: Transactional store backing file tools, if configured.
        cancel_token: Cancellation token of the running turn.
    """

    call_id: str
    file_store: TransactionalFileStore | None = None
    cancel_token: CancellationToken | None = None


ToolExecutor = Callable[[dict[str, Any], ToolContext], "Any | Awaitable[Any]"]


@dataclass(slots=True)
class ToolDefinition:
    """A registered tool.

    Attributes:
        name: Tool name used by the model.
        description: Description shown to the model.
        input_schema: JSON Schema for the arguments object.
        execute: Callable receiving ``(arguments, context)``; may be async.
        destructive: Whether the tool mutates files (backed up first).
        read_only: Whether the tool is safe to run without approval in
            trusted mode.
        path_keys: Argument names checked, in order, for the target path.
        enabled: Whether the tool is offered to the model.
    """

    name: str
    description: str
    input_schema: Mapping[str, Any]
    execute: ToolExecutor
    destructive: bool = False
    read_only: bool = False
    path_keys: Sequence[str] = DEFAULT_PATH_KEYS
    enabled: bool = True

    @property
    def required_fields(self) -> list[str]:
        return [str(name) for name in self.input_schema.get("required", ())]

    def target_path(self, arguments: Mapping[str, Any]) -> str | None:
        """Return the file path the arguments point at, if any."""
        for key in self.path_keys:
            value = arguments.get(key)
            if isinstance(value, str) and value:
                return value
        return None

    def to_openai_tool(self) -> dict[str, Any]:
        parameters = dict(self.input_schema) or {"type": "object", "properties": {}}
        parameters.setdefault("type", "object")
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": parameters,
            },
        }


# -----------------------------------------------------------------------------
# Tool Registry
# -----------------------------------------------------------------------------


class ToolRegistry:
    """Registry of tools available to a turn.

    Example:
        registry = ToolRegistry()
        registry.register(ToolDefinition(name="echo", ...))
        tool = registry.get_tool("echo")
    """

    def __init__(self, tools: Sequence[ToolDefinition] = ()) -> None:
        self._tools: dict[str, ToolDefinition] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: ToolDefinition) -> None:
        if not tool.name:
            raise ValueError("Tool name is required")
        if tool.name in self._tools:
            LOGGER.debug("Replacing registered tool: %s", tool.name)
        self._tools[tool.name] = tool
        LOGGER.debug("Registered tool: %s (destructive=%s)", tool.name, tool.destructive)

    def register_function(
        self,
        name: str,
        execute: ToolExecutor,
        *,
        description: str = "",
        input_schema: Mapping[str, Any] | None = None,
        destructive: bool = False,
        read_only: bool = False,
    ) -> ToolDefinition:
        """Register a plain callable as a tool and return its definition."""
        tool = ToolDefinition(
            name=name,
            description=description,
            input_schema=input_schema or {"type": "object", "properties": {}},
            execute=execute,
            destructive=destructive,
            read_only=read_only,
        )
        self.register(tool)
        return tool

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get_tool(self, name: str) -> ToolDefinition | None:
        """Return the enabled tool called ``name``, or None."""
        tool = self._tools.get(name)
        return tool if tool is not None and tool.enabled else None

    def has_tool(self, name: str) -> bool:
        return self.get_tool(name) is not None

    def list_tools(self, *, enabled_only: bool = True) -> list[str]:
        return [name for name, tool in self._tools.items() if tool.enabled or not enabled_only]

    def to_openai_tools(self) -> list[dict[str, Any]]:
        return [tool.to_openai_tool() for tool in self._tools.values() if tool.enabled]

    def set_enabled(self, name: str, enabled: bool) -> bool:
        tool = self._tools.get(name)
        if tool is None:
            return False
        tool.enabled = enabled
        return True

    def clear(self) -> None:
        self._tools.clear()

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.has_tool(name)


"""Tool registry and the reference file tools."""

from .registry import DEFAULT_PATH_KEYS, ToolContext, ToolDefinition, ToolExecutor, ToolRegistry
from .file_tools import build_file_tools, register_file_tools

__all__ = [
    "DEFAULT_PATH_KEYS",
    "ToolContext",
    "ToolDefinition",
    "ToolExecutor",
    "ToolRegistry",
    "build_file_tools",
    "register_file_tools",
]

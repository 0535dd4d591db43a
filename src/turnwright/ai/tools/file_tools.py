"""Reference file tools built over a transactional file store.

``write_file``, ``append_file`` and ``delete_file`` are destructive, so the
dispatcher backs up their target before running them and a failed turn
rolls them back.
"""

from __future__ import annotations

import logging
from typing import Any

from ..errors import ErrorCode, FileStoreError
from ..orchestration.file_store import TransactionalFileStore
from .registry import ToolContext, ToolDefinition, ToolRegistry

__all__ = [
    "DEFAULT_READ_CHARS",
    "read_file",
    "write_file",
    "append_file",
    "delete_file",
    "build_file_tools",
    "register_file_tools",
]

LOGGER = logging.getLogger(__name__)

# ~6000 tokens at four characters per token
DEFAULT_READ_CHARS = 24_000

_PATH_PROPERTY = {"type": "string", "description": "Path relative to the workspace root."}


def _store(context: ToolContext) -> TransactionalFileStore:
    if context.file_store is None:
        raise FileStoreError(
            error_code=ErrorCode.FILE_STORE,
            message="No file store is configured for this turn",
        )
    return context.file_store


async def read_file(arguments: dict[str, Any], context: ToolContext) -> dict[str, Any]:
    """Read a file, optionally a line range, clipped to ``max_chars``."""
    path = arguments["path"]
    content = await _store(context).read_file(path, cancel_token=context.cancel_token)
    lines = content.split("\n") if content else []
    total = len(lines)

    start = max(0, int(arguments.get("start_line", 0)))
    end = arguments.get("end_line")
    end = total - 1 if end is None else min(int(end), total - 1)
    selected = "\n".join(lines[start : end + 1]) if total and start <= end else ""

    max_chars = int(arguments.get("max_chars") or DEFAULT_READ_CHARS)
    truncated = len(selected) > max_chars
    if truncated:
        selected = selected[:max_chars]

    result: dict[str, Any] = {
        "path": path,
        "content": selected,
        "lines": {"start": start, "end": max(start, end) if total else 0, "total": total},
    }
    if truncated:
        result["truncated"] = True
        result["continuation_hint"] = "Read again with a later start_line to see the rest"
    return result


async def write_file(arguments: dict[str, Any], context: ToolContext) -> dict[str, Any]:
    path = arguments["path"]
    content = arguments["content"]
    await _store(context).write_file(path, content, cancel_token=context.cancel_token)
    LOGGER.debug("write_file wrote %s chars to %s", len(content), path)
    return {"path": path, "status": "written", "chars": len(content)}


async def append_file(arguments: dict[str, Any], context: ToolContext) -> dict[str, Any]:
    path = arguments["path"]
    content = arguments["content"]
    await _store(context).append_file(path, content, cancel_token=context.cancel_token)
    return {"path": path, "status": "appended", "chars": len(content)}


async def delete_file(arguments: dict[str, Any], context: ToolContext) -> dict[str, Any]:
    path = arguments["path"]
    await _store(context).delete_file(path, cancel_token=context.cancel_token)
    return {"path": path, "status": "deleted"}


def build_file_tools() -> list[ToolDefinition]:
    """Return definitions for the four file tools."""
    return [
        ToolDefinition(
            name="read_file",
            description="Read a text file. Large files are clipped; use start_line/end_line to page.",
            input_schema={
                "type": "object",
                "properties": {
                    "path": _PATH_PROPERTY,
                    "start_line": {"type": "integer", "minimum": 0},
                    "end_line": {"type": "integer", "minimum": 0},
                    "max_chars": {"type": "integer", "minimum": 1},
                },
                "required": ["path"],
            },
            execute=read_file,
            read_only=True,
        ),
        ToolDefinition(
            name="write_file",
            description="Create a file or replace its entire content.",
            input_schema={
                "type": "object",
                "properties": {
                    "path": _PATH_PROPERTY,
                    "content": {"type": "string", "description": "Complete new file content."},
                },
                "required": ["path", "content"],
            },
            execute=write_file,
            destructive=True,
        ),
        ToolDefinition(
            name="append_file",
            description="Append text to the end of a file, creating it if needed.",
            input_schema={
                "type": "object",
                "properties": {
                    "path": _PATH_PROPERTY,
                    "content": {"type": "string"},
                },
                "required": ["path", "content"],
            },
            execute=append_file,
            destructive=True,
        ),
        ToolDefinition(
            name="delete_file",
            description="Delete a file.",
            input_schema={
                "type": "object",
                "properties": {"path": _PATH_PROPERTY},
                "required": ["path"],
            },
            execute=delete_file,
            destructive=True,
        ),
    ]


def register_file_tools(registry: ToolRegistry) -> ToolRegistry:
    for tool in build_file_tools():
        registry.register(tool)
    return registry

"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from tests.helpers import ProgressRecorder
from turnwright.ai.orchestration.file_store import InMemoryFileStore
from turnwright.ai.orchestration.types import SessionRunState
from turnwright.ai.tools.file_tools import register_file_tools
from turnwright.ai.tools.registry import ToolRegistry


@pytest.fixture
def file_store() -> InMemoryFileStore:
    return InMemoryFileStore({"src/app.ts": "export const answer = 41;\n"})


@pytest.fixture
def registry() -> ToolRegistry:
    """Registry holding the four reference file tools."""
    return register_file_tools(ToolRegistry())


@pytest.fixture
def session_state() -> SessionRunState:
    return SessionRunState()


@pytest.fixture
def progress() -> ProgressRecorder:
    return ProgressRecorder()

"""Turn engine, model providers and tool wiring."""

from .errors import TurnFault
from .orchestration import SessionRunState, TurnEngine, TurnOutcome
from .providers import ModelProvider, ModelRequest, OpenAICompatibleProvider, create_provider
from .tools import ToolDefinition, ToolRegistry

__all__ = [
    "TurnFault",
    "SessionRunState",
    "TurnEngine",
    "TurnOutcome",
    "ModelProvider",
    "ModelRequest",
    "OpenAICompatibleProvider",
    "create_provider",
    "ToolDefinition",
    "ToolRegistry",
]

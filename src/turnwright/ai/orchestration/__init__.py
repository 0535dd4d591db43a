"""Turn orchestration: streaming, tool dispatch, liveness and evaluation."""

# Core types
from .json_repair import RepairResult, parse_tool_arguments, repair_json
from .response import ModelResponse
from .types import (
    CancellationToken,
    ContentDelta,
    Message,
    ProgressEvent,
    ProgressSink,
    ReasoningDelta,
    RunCompleted,
    RunStarted,
    SessionRunState,
    StageChange,
    StopCondition,
    Strategy,
    StreamEvent,
    ToolCallDelta,
    ToolCallDone,
    ToolCallStatus,
    ToolInvocation,
    TurnDecree,
    TurnOutcome,
    TurnPhase,
    Urgency,
    Usage,
)

# Stream parsing
from .tag_matcher import DetectorResult, PrefixTree, StreamTagDetector, TagMatch, levenshtein
from .tool_call_parser import embedded_invocations, parse_embedded_tool_calls

# Storage and coordination
from .file_store import (
    FileProgress,
    InMemoryFileStore,
    LocalFileStore,
    SerialWriteQueue,
    TransactionalFileStore,
)
from .turn_lock import LockSession, TurnLock
from .liveness import LivenessMonitor

# Evaluation and dispatch
from .evaluator import EvaluationOptions, TurnEvaluator
from .tool_dispatcher import ApprovalPolicy, DispatchResult, ToolDispatcher

# Engine
from .engine import TurnEngine

__all__ = [
    "RepairResult",
    "parse_tool_arguments",
    "repair_json",
    "ModelResponse",
    "CancellationToken",
    "ContentDelta",
    "Message",
    "ProgressEvent",
    "ProgressSink",
    "ReasoningDelta",
    "RunCompleted",
    "RunStarted",
    "SessionRunState",
    "StageChange",
    "StopCondition",
    "Strategy",
    "StreamEvent",
    "ToolCallDelta",
    "ToolCallDone",
    "ToolCallStatus",
    "ToolInvocation",
    "TurnDecree",
    "TurnOutcome",
    "TurnPhase",
    "Urgency",
    "Usage",
    "DetectorResult",
    "PrefixTree",
    "StreamTagDetector",
    "TagMatch",
    "levenshtein",
    "embedded_invocations",
    "parse_embedded_tool_calls",
    "FileProgress",
    "InMemoryFileStore",
    "LocalFileStore",
    "SerialWriteQueue",
    "TransactionalFileStore",
    "LockSession",
    "TurnLock",
    "LivenessMonitor",
    "EvaluationOptions",
    "TurnEvaluator",
    "ApprovalPolicy",
    "DispatchResult",
    "ToolDispatcher",
    "TurnEngine",
]

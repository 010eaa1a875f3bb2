"""
nodeflow - execution engine for collaborative script graphs.

Walks a room's node/edge graph, runs each node's script in a sandbox or hands
it to a caller process, and mirrors progress into the shared room document.
"""

from nodeflow.config import EngineConfig
from nodeflow.errors import (
    DispatchTimeoutError,
    NodeflowError,
    NotFoundError,
    ScriptError,
    StorageSyncError,
    ValidationError,
)
from nodeflow.graph import ExecutionCoordinator, ScriptSandbox, TraversalPolicy
from nodeflow.runtime import InMemorySharedState, LiveblocksStateClient
from nodeflow.schemas import (
    Edge,
    ExecutionLocation,
    ExecutionRecord,
    ExecutionStatus,
    FlowExecutionResult,
    Node,
    NodeExecutionResult,
    RoomSnapshot,
    SingleNodeExecutionResult,
)

__version__ = "0.1.0"

__all__ = [
    "DispatchTimeoutError",
    "Edge",
    "EngineConfig",
    "ExecutionCoordinator",
    "ExecutionLocation",
    "ExecutionRecord",
    "ExecutionStatus",
    "FlowExecutionResult",
    "InMemorySharedState",
    "LiveblocksStateClient",
    "Node",
    "NodeExecutionResult",
    "NodeflowError",
    "NotFoundError",
    "RoomSnapshot",
    "ScriptError",
    "ScriptSandbox",
    "SingleNodeExecutionResult",
    "StorageSyncError",
    "TraversalPolicy",
    "ValidationError",
]

"""Document and result schemas shared by the engine components."""

from nodeflow.schemas.execution import (
    ExecutionRecord,
    ExecutionStatus,
    FlowExecutionResult,
    NodeExecutionResult,
    SingleNodeExecutionResult,
)
from nodeflow.schemas.flow import Edge, ExecutionLocation, Node, RoomSnapshot

__all__ = [
    "Edge",
    "ExecutionLocation",
    "ExecutionRecord",
    "ExecutionStatus",
    "FlowExecutionResult",
    "Node",
    "NodeExecutionResult",
    "RoomSnapshot",
    "SingleNodeExecutionResult",
]

"""
Execution Schema - the audit trail of one traversal run.

An ExecutionRecord is inserted at the head of the room's executionHistory when
a run starts, advanced as nodes complete, and finalized with a terminal status.
"""

import secrets
import time
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, field_serializer
from pydantic.alias_generators import to_camel

_CAMEL_CONFIG = {"populate_by_name": True, "alias_generator": to_camel}


class ExecutionStatus(StrEnum):
    """Status of a run. Set once to a terminal value and never reverted."""

    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self is not ExecutionStatus.RUNNING


def new_execution_id() -> str:
    """Return a unique run id, ``exec-<epoch ms>-<suffix>``."""
    return f"exec-{int(time.time() * 1000)}-{secrets.token_hex(3)}"


def utc_now() -> datetime:
    return datetime.now(UTC)


def format_timestamp(value: datetime) -> str:
    """ISO-8601 with millisecond precision and a Z suffix, e.g. 2025-01-01T12:00:00.000Z."""
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class NodeExecutionResult(BaseModel):
    """
    Outcome of one node execution within a run.

    Exactly one of result/error is meaningful. A script that returns nothing
    leaves both unset, which also stops propagation to the node's children.
    """

    node_id: str
    node_label: str = ""
    result: Any = None
    error: str | None = None

    model_config = _CAMEL_CONFIG

    @property
    def failed(self) -> bool:
        return self.error is not None

    @property
    def has_value(self) -> bool:
        return self.error is None and self.result is not None

    def to_document(self) -> dict[str, Any]:
        data: dict[str, Any] = {"nodeId": self.node_id, "nodeLabel": self.node_label}
        if self.result is not None:
            data["result"] = self.result
        if self.error is not None:
            data["error"] = self.error
        return data


class ExecutionRecord(BaseModel):
    """A complete execution of a flow, as stored in the room's history."""

    id: str = Field(default_factory=new_execution_id)
    start_node_id: str
    start_node_label: str = ""
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None
    status: ExecutionStatus = ExecutionStatus.RUNNING
    nodes_executed: int = 0
    results: list[NodeExecutionResult] = Field(default_factory=list)

    model_config = {**_CAMEL_CONFIG, "extra": "allow"}

    @field_serializer("started_at", "completed_at")
    def _serialize_timestamp(self, value: datetime | None) -> str | None:
        return format_timestamp(value) if value is not None else None

    @property
    def duration_ms(self) -> int:
        """Duration of the run in milliseconds."""
        if self.completed_at is None:
            return 0
        delta = self.completed_at - self.started_at
        return int(delta.total_seconds() * 1000)

    def to_document(self) -> dict[str, Any]:
        data = self.model_dump(mode="json", by_alias=True, exclude={"results"})
        if data.get("completedAt") is None:
            data.pop("completedAt", None)
        data["results"] = [r.to_document() for r in self.results]
        return data


class FlowExecutionResult(BaseModel):
    """Response of executeFlow."""

    success: bool
    execution_id: str
    nodes_executed: int
    results: list[NodeExecutionResult] = Field(default_factory=list)

    model_config = _CAMEL_CONFIG

    def to_response(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "executionId": self.execution_id,
            "nodesExecuted": self.nodes_executed,
            "results": [r.to_document() for r in self.results],
        }


class SingleNodeExecutionResult(BaseModel):
    """Response of executeSingleNode: the node outcome plus where to go next."""

    success: bool
    node_result: NodeExecutionResult
    children: list[str] = Field(default_factory=list)

    model_config = _CAMEL_CONFIG

    def to_response(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "nodeResult": self.node_result.to_document(),
            "children": list(self.children),
        }

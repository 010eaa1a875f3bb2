"""
Flow Schema - the nodes and edges of a room's shared document.

Nodes and edges are authored by collaborators through the canvas; the engine
only reads them and writes back the result fields of a node (lastResult,
isExecuting, error and the client-pending marker).

A node document keeps its canvas frame (``id``, ``type``, ``position``) at the
top level and everything else under ``data``:

    {"id": "a", "type": "code", "position": {"x": 0, "y": 0},
     "data": {"label": "A", "code": "return 1", "executionMode": "server",
              "lastResult": 1, "isExecuting": false}}

Document form uses camelCase keys, Python attributes are snake_case.
"""

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


class ExecutionLocation(StrEnum):
    """Where a node's script is evaluated. Values are the document's ``executionMode``."""

    BACKEND = "server"  # Trusted engine process
    CALLER = "client"  # The collaborator's own process, via the pending marker


NODE_DATA_KEY = "data"

# Keys that sit beside ``data`` in a node document
NODE_FRAME_KEYS = ("id", "type", "position")

# Node fields that are dropped from the document when unset
_OPTIONAL_NODE_FIELDS = {"lastResult", "error", "pendingClientExecution", "clientInput"}


class Node(BaseModel):
    """
    A unit of work holding a script and its last execution outcome.

    Attributes are the flattened node document: frame keys plus the ``data``
    fields. Extra ``data`` keys written by the canvas are kept.
    """

    id: str
    type: str = "code"
    position: dict[str, Any] = Field(default_factory=lambda: {"x": 0, "y": 0})
    label: str = ""
    code: str = ""
    execution_location: ExecutionLocation = Field(default=ExecutionLocation.BACKEND, alias="executionMode")
    last_result: Any = None
    is_executing: bool = False
    error: str | None = None
    pending_caller_execution: bool | None = Field(default=None, alias="pendingClientExecution")
    caller_input: Any = Field(default=None, alias="clientInput")

    model_config = {"extra": "allow", "populate_by_name": True, "alias_generator": to_camel}

    @property
    def runs_on_caller(self) -> bool:
        return self.execution_location == ExecutionLocation.CALLER

    @classmethod
    def from_document(cls, node_id: str, document: dict[str, Any]) -> "Node":
        """Build a node from its document; ``node_id`` wins over any stored id."""
        data = document.get(NODE_DATA_KEY) or {}
        frame = {key: document[key] for key in NODE_FRAME_KEYS if key in document}
        return cls.model_validate({**data, **frame, "id": node_id})

    def to_document(self) -> dict[str, Any]:
        """Serialize to the shared document form."""
        data = self.model_dump(mode="json", by_alias=True)
        for key in _OPTIONAL_NODE_FIELDS:
            if data.get(key) is None:
                data.pop(key, None)
        if not self.pending_caller_execution:
            data.pop("clientInput", None)
        document = {key: data.pop(key) for key in NODE_FRAME_KEYS}
        document[NODE_DATA_KEY] = data
        return document


def node_field_key(name: str) -> str:
    """Document key of a snake_case node field."""
    info = Node.model_fields.get(name)
    if info is not None and info.alias:
        return info.alias
    return to_camel(name)


class Edge(BaseModel):
    """A directed data-flow link from one node's output to another node's input."""

    id: str
    source: str = Field(description="Source node ID")
    target: str = Field(description="Target node ID")
    source_handle: str | None = None
    target_handle: str | None = None

    model_config = {"extra": "allow", "populate_by_name": True, "alias_generator": to_camel}

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


@dataclass
class RoomSnapshot:
    """A point-in-time read of a room's nodes and edges."""

    nodes: dict[str, Node] = field(default_factory=dict)
    edges: list[Edge] = field(default_factory=list)

    def get_node(self, node_id: str) -> Node | None:
        return self.nodes.get(node_id)

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> "RoomSnapshot":
        """Build a snapshot from the plain-JSON room document."""
        raw_nodes = document.get("nodes") or {}
        raw_edges = document.get("edges") or []
        nodes = {}
        for key, value in raw_nodes.items():
            # The map key is authoritative for the node id
            nodes[key] = Node.from_document(key, value)
        edges = [Edge.model_validate(e) for e in raw_edges]
        return cls(nodes=nodes, edges=edges)

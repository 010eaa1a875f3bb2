"""
Shared State Client - the engine's view of a room's collaborative document.

The document is owned by an external, eventually-consistent store:
- ``nodes``: keyed map of Node documents (canvas frame plus a ``data`` map)
- ``edges``: ordered list of Edge documents
- ``executionHistory``: ordered list of ExecutionRecord documents, newest first

Two operations cross the boundary: ``snapshot`` (a fresh read every call) and
``mutate`` (an update function applied as one transaction by the store).

Writes made during a run are a live-UI side channel. BestEffortState wraps a
client so a failed write is logged and reported as a SyncOutcome instead of
aborting the run.
"""

import asyncio
import copy
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from nodeflow.errors import NotFoundError
from nodeflow.schemas.execution import ExecutionStatus
from nodeflow.schemas.flow import NODE_DATA_KEY, NODE_FRAME_KEYS, RoomSnapshot, node_field_key

logger = logging.getLogger(__name__)

NODES_KEY = "nodes"
EDGES_KEY = "edges"
HISTORY_KEY = "executionHistory"


class RoomDocument:
    """
    Mutable plain-JSON view of a room, handed to mutate() update functions.

    Update helpers take snake_case field names and write node fields under
    the node's ``data`` map. A field given as None is removed from the
    stored document.
    """

    def __init__(self, data: dict[str, Any]):
        self.data = data
        self.data.setdefault(NODES_KEY, {})
        self.data.setdefault(EDGES_KEY, [])
        self.data.setdefault(HISTORY_KEY, [])

    @property
    def nodes(self) -> dict[str, Any]:
        return self.data[NODES_KEY]

    @property
    def edges(self) -> list[Any]:
        return self.data[EDGES_KEY]

    @property
    def history(self) -> list[Any]:
        return self.data[HISTORY_KEY]

    def update_node(self, node_id: str, **fields: Any) -> bool:
        """Merge fields into a node's ``data``. Returns False if the node doesn't exist."""
        current = self.nodes.get(node_id)
        if not isinstance(current, dict):
            return False
        updated = dict(current)
        data = dict(updated.get(NODE_DATA_KEY) or {})
        for name, value in fields.items():
            key = node_field_key(name)
            target = updated if key in NODE_FRAME_KEYS else data
            if value is None:
                target.pop(key, None)
            else:
                target[key] = value
        updated[NODE_DATA_KEY] = data
        self.nodes[node_id] = updated
        return True

    def node_field(self, node_id: str, name: str) -> Any:
        """Current value of a snake_case node field, or None."""
        current = self.nodes.get(node_id)
        if not isinstance(current, dict):
            return None
        key = node_field_key(name)
        if key in NODE_FRAME_KEYS:
            return current.get(key)
        return (current.get(NODE_DATA_KEY) or {}).get(key)

    def insert_history(self, record: dict[str, Any], limit: int) -> None:
        """Insert a record at the head of the history, keeping ``limit`` entries."""
        self.history.insert(0, record)
        del self.history[limit:]

    def update_history(self, record_id: str, fields: dict[str, Any]) -> bool:
        """Merge camelCase fields into the record with ``record_id``.

        A terminal status is never reverted to running.
        """
        for index, record in enumerate(self.history):
            if not isinstance(record, dict) or record.get("id") != record_id:
                continue
            updated = {**record, **fields}
            stored_status = record.get("status")
            if (
                stored_status in (ExecutionStatus.SUCCESS, ExecutionStatus.ERROR)
                and updated.get("status") == ExecutionStatus.RUNNING
            ):
                updated["status"] = stored_status
            self.history[index] = updated
            return True
        return False


UpdateFn = Callable[[RoomDocument], None]


class SharedStateClient(ABC):
    """Abstract access to the external document store."""

    @abstractmethod
    async def snapshot(self, room_id: str) -> RoomSnapshot:
        """Read the room's current nodes and edges. Raises NotFoundError."""

    @abstractmethod
    async def mutate(self, room_id: str, update_fn: UpdateFn) -> None:
        """Apply ``update_fn`` to the room as one transaction.

        Raises StorageSyncError when the store is unreachable.
        """

    async def aclose(self) -> None:
        """Release network resources."""


class InMemorySharedState(SharedStateClient):
    """
    Process-local document store.

    Each room is guarded by its own lock; an update function that raises leaves
    the room untouched. Used by tests, the CLI and single-process deployments.

    Example:
        state = InMemorySharedState()
        state.create_room("room-1", nodes=[{"id": "a", "data": {"code": "return 1"}}])
        snapshot = await state.snapshot("room-1")
    """

    def __init__(self, rooms: dict[str, dict[str, Any]] | None = None):
        self._rooms: dict[str, dict[str, Any]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        for room_id, document in (rooms or {}).items():
            self._rooms[room_id] = RoomDocument(copy.deepcopy(document)).data

    def create_room(
        self,
        room_id: str,
        nodes: list[dict[str, Any]] | dict[str, dict[str, Any]] | None = None,
        edges: list[dict[str, Any]] | None = None,
    ) -> None:
        """Create (or replace) a room. ``nodes`` may be a list or an id-keyed map."""
        if isinstance(nodes, list):
            node_map = {n["id"]: copy.deepcopy(n) for n in nodes}
        else:
            node_map = copy.deepcopy(nodes or {})
        self._rooms[room_id] = RoomDocument(
            {NODES_KEY: node_map, EDGES_KEY: copy.deepcopy(edges or [])}
        ).data

    def load_room(self, room_id: str, path: str | Path) -> None:
        """Load a room document from a JSON file."""
        with open(path, encoding="utf-8") as f:
            document = json.load(f)
        self.create_room(room_id, document.get(NODES_KEY), document.get(EDGES_KEY))
        self._rooms[room_id][HISTORY_KEY] = document.get(HISTORY_KEY, [])

    def has_room(self, room_id: str) -> bool:
        return room_id in self._rooms

    def document(self, room_id: str) -> dict[str, Any]:
        """Return a deep copy of the raw room document."""
        if room_id not in self._rooms:
            raise NotFoundError(f"Room {room_id} not found")
        return copy.deepcopy(self._rooms[room_id])

    def _lock(self, room_id: str) -> asyncio.Lock:
        if room_id not in self._locks:
            self._locks[room_id] = asyncio.Lock()
        return self._locks[room_id]

    async def snapshot(self, room_id: str) -> RoomSnapshot:
        if room_id not in self._rooms:
            raise NotFoundError(f"Room {room_id} not found")
        return RoomSnapshot.from_document(copy.deepcopy(self._rooms[room_id]))

    async def mutate(self, room_id: str, update_fn: UpdateFn) -> None:
        async with self._lock(room_id):
            if room_id not in self._rooms:
                raise NotFoundError(f"Room {room_id} not found")
            document = RoomDocument(copy.deepcopy(self._rooms[room_id]))
            update_fn(document)
            self._rooms[room_id] = document.data


@dataclass
class SyncOutcome:
    """Result of a best-effort write. Never part of an execution result."""

    ok: bool
    error: str | None = None


class BestEffortState:
    """
    Wraps a SharedStateClient so writes never abort an in-flight execution.

    Reads pass through unchanged; a failed mutate() is logged and returned
    as ``SyncOutcome(ok=False)``.
    """

    def __init__(self, client: SharedStateClient):
        self.client = client

    async def snapshot(self, room_id: str) -> RoomSnapshot:
        return await self.client.snapshot(room_id)

    async def mutate(self, room_id: str, update_fn: UpdateFn, description: str = "update") -> SyncOutcome:
        try:
            await self.client.mutate(room_id, update_fn)
        except Exception as e:
            logger.error(f"Failed to {description} in room {room_id}: {e}")
            return SyncOutcome(ok=False, error=str(e))
        return SyncOutcome(ok=True)

    async def update_node(self, room_id: str, node_id: str, **fields: Any) -> SyncOutcome:
        """Best-effort merge of node fields (None removes a field)."""
        return await self.mutate(
            room_id,
            lambda doc: doc.update_node(node_id, **fields),
            description=f"update node {node_id}",
        )

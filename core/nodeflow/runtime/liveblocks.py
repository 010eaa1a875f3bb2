"""
Liveblocks-backed Shared State Client.

Reads the room's storage as plain JSON and writes changes back as a JSON
Patch (RFC 6902), authenticated with the backend secret key.

Usage:
    client = LiveblocksStateClient(secret=os.environ["LIVEBLOCKS_SECRET_KEY"])
    snapshot = await client.snapshot("my-room")
    await client.mutate("my-room", lambda doc: doc.update_node("a", is_executing=True))

A mutation is read-modify-write: the patch is applied atomically by the
store, but a concurrent writer between the read and the patch can be
overwritten at the paths this patch touches.
"""

import copy
import logging
from typing import Any
from urllib.parse import quote

import httpx

from nodeflow.config import DEFAULT_LIVEBLOCKS_BASE_URL
from nodeflow.errors import NotFoundError, StorageSyncError
from nodeflow.runtime.shared_state import (
    EDGES_KEY,
    HISTORY_KEY,
    NODES_KEY,
    RoomDocument,
    SharedStateClient,
    UpdateFn,
)
from nodeflow.schemas.flow import NODE_DATA_KEY, RoomSnapshot

logger = logging.getLogger(__name__)


def _pointer(*parts: str | int) -> str:
    """Build a JSON Pointer, escaping ``~`` and ``/`` in each segment."""
    escaped = [str(p).replace("~", "~0").replace("/", "~1") for p in parts]
    return "/" + "/".join(escaped)


def _map_patch(path: tuple[str, ...], before: dict[str, Any], after: dict[str, Any]) -> list[dict[str, Any]]:
    ops: list[dict[str, Any]] = []
    for member in before:
        if member not in after:
            ops.append({"op": "remove", "path": _pointer(*path, member)})
    for member, value in after.items():
        if before.get(member) != value or member not in before:
            ops.append({"op": "add", "path": _pointer(*path, member), "value": value})
    return ops


def _node_patch(node_id: str, before: dict[str, Any], after: dict[str, Any]) -> list[dict[str, Any]]:
    """Patch one node field by field, descending into its ``data`` map."""
    before_data = before.get(NODE_DATA_KEY)
    after_data = after.get(NODE_DATA_KEY)
    if not isinstance(before_data, dict) or not isinstance(after_data, dict):
        return _map_patch((NODES_KEY, node_id), before, after)
    ops = _map_patch(
        (NODES_KEY, node_id),
        {k: v for k, v in before.items() if k != NODE_DATA_KEY},
        {k: v for k, v in after.items() if k != NODE_DATA_KEY},
    )
    ops.extend(_map_patch((NODES_KEY, node_id, NODE_DATA_KEY), before_data, after_data))
    return ops


def _nodes_patch(before: dict[str, Any], after: dict[str, Any]) -> list[dict[str, Any]]:
    ops: list[dict[str, Any]] = []
    for node_id in before:
        if node_id not in after:
            ops.append({"op": "remove", "path": _pointer(NODES_KEY, node_id)})
    for node_id, node in after.items():
        old = before.get(node_id)
        if node_id in before and old == node:
            continue
        if isinstance(old, dict) and isinstance(node, dict):
            # Only the changed fields, so concurrent canvas edits to others survive
            ops.extend(_node_patch(node_id, old, node))
        else:
            ops.append({"op": "add", "path": _pointer(NODES_KEY, node_id), "value": node})
    return ops


def _list_patch(key: str, before: list[Any], after: list[Any]) -> list[dict[str, Any]]:
    if before == after:
        return []
    # Head insertion, optionally with the tail trimmed (history inserts)
    for inserted in range(1, len(after)):
        kept = len(after) - inserted
        if kept <= len(before) and after[inserted:] == before[:kept]:
            ops: list[dict[str, Any]] = [
                {"op": "remove", "path": _pointer(key, i)} for i in range(len(before) - 1, kept - 1, -1)
            ]
            ops.extend({"op": "add", "path": _pointer(key, i), "value": after[i]} for i in range(inserted))
            return ops
    if len(before) == len(after):
        return [
            {"op": "replace", "path": _pointer(key, i), "value": item}
            for i, (old, item) in enumerate(zip(before, after, strict=True))
            if old != item
        ]
    return [{"op": "replace", "path": _pointer(key), "value": after}]


def diff_document(before: dict[str, Any], after: dict[str, Any]) -> list[dict[str, Any]]:
    """Compute the JSON Patch that turns ``before`` into ``after``."""
    ops: list[dict[str, Any]] = []
    for key in (NODES_KEY, EDGES_KEY, HISTORY_KEY):
        if key not in after:
            continue
        if key not in before:
            if not after[key]:
                continue
            ops.append({"op": "add", "path": _pointer(key), "value": after[key]})
        elif key == NODES_KEY:
            ops.extend(_nodes_patch(before[key], after[key]))
        else:
            ops.extend(_list_patch(key, before[key], after[key]))
    return ops


class LiveblocksStateClient(SharedStateClient):
    """Shared state over the Liveblocks REST storage API."""

    def __init__(
        self,
        secret: str | None,
        base_url: str = DEFAULT_LIVEBLOCKS_BASE_URL,
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        if not secret:
            raise ValueError("LIVEBLOCKS_SECRET_KEY is not configured")
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._base_url = base_url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {secret}"}

    def _storage_url(self, room_id: str) -> str:
        return f"{self._base_url}/rooms/{quote(room_id, safe='')}/storage"

    async def _request(self, method: str, url: str, room_id: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, url, headers=self._headers, **kwargs)
        except httpx.HTTPError as e:
            raise StorageSyncError(f"Liveblocks request failed: {e}") from e
        if response.status_code == 404:
            raise NotFoundError(f"Room {room_id} not found")
        if response.status_code >= 400:
            raise StorageSyncError(
                f"Liveblocks returned {response.status_code} for {method} storage: {response.text[:200]}"
            )
        return response

    async def read_document(self, room_id: str) -> dict[str, Any]:
        """Fetch the room's storage root as plain JSON."""
        response = await self._request(
            "GET", self._storage_url(room_id), room_id, params={"format": "json"}
        )
        try:
            data = response.json()
        except ValueError as e:
            raise StorageSyncError(f"Invalid storage payload for room {room_id}") from e
        return data if isinstance(data, dict) else {}

    async def snapshot(self, room_id: str) -> RoomSnapshot:
        return RoomSnapshot.from_document(await self.read_document(room_id))

    async def mutate(self, room_id: str, update_fn: UpdateFn) -> None:
        before = await self.read_document(room_id)
        document = RoomDocument(copy.deepcopy(before))
        update_fn(document)
        ops = diff_document(before, document.data)
        if not ops:
            return
        logger.debug(f"Patching room {room_id} with {len(ops)} op(s)")
        await self._request(
            "PATCH",
            f"{self._storage_url(room_id)}/json-patch",
            room_id,
            json=ops,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

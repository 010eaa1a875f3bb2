"""
Location Dispatcher - runs a node where its executionMode says.

server (ExecutionLocation.BACKEND): the engine evaluates the script in its
own ScriptSandbox.

client (ExecutionLocation.CALLER): the engine doesn't own the caller's
runtime. It publishes a pending marker plus the serialized input in the
node's data, then polls the room until a caller process clears the marker
(having written lastResult/error) or the wait window closes:

    engine                         shared document                     caller
    ──────                         ───────────────                     ──────
    set pendingClientExecution ──▶ data.pendingClientExecution ──▶ sees marker
    poll every poll_interval       data.clientInput                    runs script
    settled? read lastResult   ◀── marker cleared, data.lastResult ◀── writes back

If the marker write fails it is retried on each poll; an unset marker only
counts as settled once the marker has reached the store.

Caller dispatches for the same node are serialized inside this process so a
node never has two outstanding markers from one engine. Two engine processes
dispatching the same caller node can still overwrite each other's marker.
"""

import asyncio
import functools
import logging
from collections import Counter
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

from nodeflow.errors import DispatchTimeoutError, ScriptError
from nodeflow.graph.sandbox import ScriptSandbox, json_round_trip
from nodeflow.runtime.shared_state import BestEffortState, SyncOutcome
from nodeflow.schemas.execution import NodeExecutionResult
from nodeflow.schemas.flow import Node

logger = logging.getLogger(__name__)

CALLER_TIMEOUT_MESSAGE = "Caller execution timeout - no caller connected or execution took too long"


class LocationDispatcher:
    """
    Dispatches one node execution to the backend sandbox or to a caller.

    Example:
        dispatcher = LocationDispatcher(BestEffortState(client), ScriptSandbox())
        result = await dispatcher.dispatch("room-1", node, {"v": 1})
    """

    def __init__(
        self,
        state: BestEffortState,
        sandbox: ScriptSandbox,
        poll_interval: float = 0.5,
        caller_timeout: float = 60.0,
        feedback_delay: float = 0.0,
    ):
        """
        Args:
            state: Best-effort shared state used for result writes and polling
            sandbox: Sandbox for backend-mode nodes
            poll_interval: Seconds between polls while a caller node is pending
            caller_timeout: Max seconds to wait for a caller node
            feedback_delay: Pause after marking a backend node as executing,
                so collaborators see the executing state
        """
        self.state = state
        self.sandbox = sandbox
        self.poll_interval = poll_interval
        self.caller_timeout = caller_timeout
        self.feedback_delay = feedback_delay
        self._caller_locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._caller_lock_users: Counter[tuple[str, str]] = Counter()

    async def dispatch(self, room_id: str, node: Node, input: Any) -> NodeExecutionResult:
        if node.runs_on_caller:
            return await self._run_on_caller(room_id, node, input)
        return await self._run_on_backend(room_id, node, input)

    # === BACKEND ===

    async def _run_on_backend(self, room_id: str, node: Node, input: Any) -> NodeExecutionResult:
        await self.state.update_node(room_id, node.id, is_executing=True, error=None)
        if self.feedback_delay > 0:
            await asyncio.sleep(self.feedback_delay)

        try:
            value = await self.sandbox.run(node.code, input, node_id=node.id)
            result = NodeExecutionResult(node_id=node.id, node_label=node.label, result=value)
        except ScriptError as e:
            logger.warning(f"Node {node.id} failed: {e.message}", extra={"node_id": node.id})
            result = NodeExecutionResult(node_id=node.id, node_label=node.label, error=e.message)

        await self.state.update_node(
            room_id,
            node.id,
            is_executing=False,
            last_result=result.result,
            error=result.error,
        )
        return result

    # === CALLER ===

    @asynccontextmanager
    async def _caller_lock(self, room_id: str, node_id: str) -> AsyncIterator[None]:
        """Serialize caller dispatches per node; the lock is dropped once unused."""
        key = (room_id, node_id)
        lock = self._caller_locks.setdefault(key, asyncio.Lock())
        self._caller_lock_users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._caller_lock_users[key] -= 1
            if not self._caller_lock_users[key]:
                del self._caller_lock_users[key]
                del self._caller_locks[key]

    async def _run_on_caller(self, room_id: str, node: Node, input: Any) -> NodeExecutionResult:
        async with self._caller_lock(room_id, node.id):
            try:
                caller_input = json_round_trip(input)
            except ScriptError as e:
                return NodeExecutionResult(node_id=node.id, node_label=node.label, error=e.message)

            publish = functools.partial(
                self.state.update_node,
                room_id,
                node.id,
                is_executing=True,
                error=None,
                pending_caller_execution=True,
                caller_input=caller_input,
            )
            outcome = await publish()
            logger.info(f"Waiting for a caller to execute node {node.id}", extra={"node_id": node.id})

            settled = await self._await_caller(room_id, node.id, republish=None if outcome.ok else publish)
            if settled is not None:
                return NodeExecutionResult(
                    node_id=node.id,
                    node_label=node.label,
                    result=settled.last_result if settled.error is None else None,
                    error=settled.error,
                )

            timeout = DispatchTimeoutError(CALLER_TIMEOUT_MESSAGE)
            logger.warning(
                f"Node {node.id} not completed by a caller within {self.caller_timeout:g}s",
                extra={"node_id": node.id},
            )
            await self.state.update_node(
                room_id,
                node.id,
                is_executing=False,
                pending_caller_execution=False,
                caller_input=None,
                error=timeout.message,
            )
            return NodeExecutionResult(node_id=node.id, node_label=node.label, error=timeout.message)

    async def _await_caller(
        self,
        room_id: str,
        node_id: str,
        republish: Callable[[], Awaitable[SyncOutcome]] | None = None,
    ) -> Node | None:
        """Poll until the pending marker is cleared. Returns None on timeout.

        ``republish`` is given when the marker write failed. Until a retry of
        it succeeds (or the marker shows up in the document), an unset marker
        only means no caller was ever asked, so it never counts as settled.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.caller_timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(self.poll_interval, remaining))
            try:
                snapshot = await self.state.snapshot(room_id)
            except Exception as e:
                logger.warning(f"Polling room {room_id} failed: {e}")
                continue
            current = snapshot.get_node(node_id)
            # A deleted node may be restored by a collaborator, keep waiting
            if current is None:
                continue
            if current.pending_caller_execution:
                republish = None
                continue
            if republish is not None:
                if (await republish()).ok:
                    republish = None
                continue
            return current

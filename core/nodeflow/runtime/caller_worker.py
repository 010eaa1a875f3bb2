"""
Caller Worker - the caller side of the pending-marker protocol.

Runs in a collaborator's own process. It watches a room for nodes whose
pendingClientExecution marker is set, runs them in a local sandbox against
the published clientInput, and writes the outcome back while clearing the
marker. The engine's dispatcher picks the result up on its next poll.

Lifecycle:
    worker = CallerWorker(LiveblocksStateClient(secret), poll_interval=0.5)
    stop = asyncio.Event()
    await worker.run("my-room", stop)
"""

import asyncio
import logging

from nodeflow.errors import ScriptError
from nodeflow.graph.sandbox import ScriptSandbox
from nodeflow.runtime.shared_state import BestEffortState, RoomDocument, SharedStateClient
from nodeflow.schemas.execution import NodeExecutionResult
from nodeflow.schemas.flow import Node

logger = logging.getLogger(__name__)


class CallerWorker:
    """Services caller-located nodes of one room."""

    def __init__(
        self,
        state: SharedStateClient,
        sandbox: ScriptSandbox | None = None,
        poll_interval: float = 0.5,
    ):
        self.state = BestEffortState(state)
        self.sandbox = sandbox or ScriptSandbox()
        self.poll_interval = poll_interval

    async def run_once(self, room_id: str) -> list[NodeExecutionResult]:
        """Execute every node currently pending in ``room_id``."""
        snapshot = await self.state.snapshot(room_id)
        pending = [node for node in snapshot.nodes.values() if node.pending_caller_execution]
        results = []
        for node in pending:
            results.append(await self._execute(room_id, node))
        return results

    async def _execute(self, room_id: str, node: Node) -> NodeExecutionResult:
        logger.info(f"Executing caller node {node.id}", extra={"node_id": node.id, "room_id": room_id})
        try:
            value = await self.sandbox.run(node.code, node.caller_input, node_id=node.id)
            result = NodeExecutionResult(node_id=node.id, node_label=node.label, result=value)
        except ScriptError as e:
            result = NodeExecutionResult(node_id=node.id, node_label=node.label, error=e.message)

        def complete(doc: RoomDocument) -> None:
            # The engine gave up on this dispatch (timeout) or the node is gone
            if not doc.node_field(node.id, "pending_caller_execution"):
                return
            doc.update_node(
                node.id,
                last_result=result.result,
                error=result.error,
                is_executing=False,
                pending_caller_execution=False,
                caller_input=None,
            )

        await self.state.mutate(room_id, complete, description=f"complete caller node {node.id}")
        return result

    async def run(self, room_id: str, stop_event: asyncio.Event | None = None) -> None:
        """Poll ``room_id`` until ``stop_event`` is set."""
        stop_event = stop_event or asyncio.Event()
        logger.info(f"Caller worker watching room {room_id}")
        while not stop_event.is_set():
            try:
                await self.run_once(room_id)
            except Exception as e:
                logger.warning(f"Caller worker poll of room {room_id} failed: {e}")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval)
            except TimeoutError:
                pass
        logger.info(f"Caller worker for room {room_id} stopped")

    async def aclose(self) -> None:
        await self.sandbox.aclose()
        await self.state.client.aclose()

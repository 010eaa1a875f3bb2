"""
Execution Coordinator - runs a flow from a start node.

The coordinator:
1. Validates the request and resolves the start node
2. Creates the run's ExecutionRecord in the room history
3. Walks the graph depth-first, one node at a time, re-reading the room
   before every node
4. Dispatches each node to the backend sandbox or a caller
5. Feeds each node's result to its children as their input
6. Finalizes the record with a terminal status

Cycles are allowed. A revisited node simply runs again until the per-node or
global cap of the run's ExecutionBudget trips. A failing node stops its own
branch only; siblings reached through another parent still run.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from nodeflow.config import EngineConfig
from nodeflow.errors import NotFoundError, ScriptError, ValidationError
from nodeflow.graph.budget import ExecutionBudget, TraversalPolicy
from nodeflow.graph.model import children_of
from nodeflow.graph.sandbox import ScriptSandbox
from nodeflow.observability import set_trace_context
from nodeflow.runtime.dispatcher import LocationDispatcher
from nodeflow.runtime.history import HistoryRecorder
from nodeflow.runtime.shared_state import BestEffortState, SharedStateClient
from nodeflow.schemas.execution import (
    ExecutionRecord,
    ExecutionStatus,
    FlowExecutionResult,
    NodeExecutionResult,
    SingleNodeExecutionResult,
    utc_now,
)

logger = logging.getLogger(__name__)


@dataclass
class FlowRun:
    """Mutable state of one in-flight run."""

    room_id: str
    record: ExecutionRecord
    has_error: bool = False
    results: list[NodeExecutionResult] = field(default_factory=list)


def _require(**fields: str | None) -> None:
    missing = [name for name, value in fields.items() if not value or not str(value).strip()]
    if missing:
        raise ValidationError(f"{' and '.join(fields)} are required")


class ExecutionCoordinator:
    """
    Orchestrates graph model, sandbox, dispatcher and history for flow runs.

    Example:
        coordinator = ExecutionCoordinator(InMemorySharedState(), config=EngineConfig())
        result = await coordinator.execute_flow("room-1", "a")
        print(result.success, result.nodes_executed)
    """

    def __init__(
        self,
        state: SharedStateClient,
        sandbox: ScriptSandbox | None = None,
        config: EngineConfig | None = None,
        policy: TraversalPolicy = TraversalPolicy.CYCLE_TOLERANT,
        dispatcher: LocationDispatcher | None = None,
        history: HistoryRecorder | None = None,
    ):
        self.config = config or EngineConfig()
        self.policy = policy
        self.state = BestEffortState(state)
        self.sandbox = sandbox or ScriptSandbox(timeout=self.config.script_timeout)
        self.dispatcher = dispatcher or LocationDispatcher(
            self.state,
            self.sandbox,
            poll_interval=self.config.caller_poll_interval,
            caller_timeout=self.config.caller_timeout,
            feedback_delay=self.config.feedback_delay,
        )
        self.history = history or HistoryRecorder(self.state, limit=self.config.history_limit)

    def new_budget(self) -> ExecutionBudget:
        return ExecutionBudget(
            max_per_node=self.config.max_executions_per_node,
            max_total=self.config.max_total_executions,
            policy=self.policy,
        )

    async def execute_flow(
        self,
        room_id: str,
        start_node_id: str,
        input: Any = None,
        budget: ExecutionBudget | None = None,
    ) -> FlowExecutionResult:
        """
        Run the bounded traversal starting at ``start_node_id``.

        Raises:
            ValidationError: room_id or start_node_id missing
            NotFoundError: room or start node doesn't exist

        Every other failure is reported in the returned results.
        """
        _require(roomId=room_id, startNodeId=start_node_id)

        snapshot = await self.state.snapshot(room_id)
        start_node = snapshot.get_node(start_node_id)
        if start_node is None:
            raise NotFoundError(f"Start node {start_node_id} not found")

        record = ExecutionRecord(start_node_id=start_node_id, start_node_label=start_node.label)
        run = FlowRun(room_id=room_id, record=record)
        set_trace_context(execution_id=record.id, room_id=room_id)
        logger.info(f"Starting execution {record.id} from node {start_node_id}")

        await self.history.begin(room_id, record)

        budget = budget or self.new_budget()
        await self._visit(run, start_node_id, input, budget)

        record.results = list(run.results)
        record.nodes_executed = len(run.results)
        record.status = ExecutionStatus.ERROR if run.has_error else ExecutionStatus.SUCCESS
        record.completed_at = utc_now()
        set_trace_context(node_id=None)
        await self.history.finish(room_id, record)

        return FlowExecutionResult(
            success=not run.has_error,
            execution_id=record.id,
            nodes_executed=record.nodes_executed,
            results=list(run.results),
        )

    async def _visit(self, run: FlowRun, node_id: str, input: Any, budget: ExecutionBudget) -> None:
        """Execute ``node_id`` then, if it produced a value, each of its children."""
        reason = budget.exhausted_for(node_id)
        if reason:
            logger.warning(f"Skipping node {node_id}: {reason}")
            return
        budget.consume(node_id)

        # Re-read before every node: collaborators may have edited the graph
        try:
            snapshot = await self.state.snapshot(run.room_id)
        except Exception as e:
            logger.error(f"Failed to read room {run.room_id} before node {node_id}: {e}")
            return
        node = snapshot.get_node(node_id)
        if node is None:
            logger.debug(f"Node {node_id} no longer exists, dropping branch")
            return

        set_trace_context(node_id=node_id)
        result = await self.dispatcher.dispatch(run.room_id, node, input)
        run.results.append(result)

        if result.failed:
            run.has_error = True
            return

        await self.history.advance(
            run.room_id,
            run.record.id,
            nodes_executed=len(run.results),
            results=list(run.results),
        )

        if not result.has_value:
            return

        for child_id in children_of(node_id, snapshot.edges):
            await self._visit(run, child_id, result.result, budget)

    async def execute_single_node(
        self,
        room_id: str,
        node_id: str,
        input: Any = None,
    ) -> SingleNodeExecutionResult:
        """
        Run exactly one node in the backend sandbox; the caller drives traversal.

        Nothing is written to the room. The returned children are the node's
        outgoing targets, for the caller to execute next.

        Raises:
            ValidationError: room_id or node_id missing
            NotFoundError: room or node doesn't exist
        """
        _require(roomId=room_id, nodeId=node_id)

        snapshot = await self.state.snapshot(room_id)
        node = snapshot.get_node(node_id)
        if node is None:
            raise NotFoundError(f"Node {node_id} not found")

        try:
            value = await self.sandbox.run(node.code, input, node_id=node.id)
            node_result = NodeExecutionResult(node_id=node.id, node_label=node.label, result=value)
        except ScriptError as e:
            node_result = NodeExecutionResult(node_id=node.id, node_label=node.label, error=e.message)

        return SingleNodeExecutionResult(
            success=not node_result.failed,
            node_result=node_result,
            children=children_of(node_id, snapshot.edges),
        )

    async def aclose(self) -> None:
        await self.sandbox.aclose()
        await self.state.client.aclose()

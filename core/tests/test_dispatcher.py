"""Tests for the location dispatcher: backend runs and the caller polling protocol."""

import asyncio

import pytest

from nodeflow.errors import StorageSyncError
from nodeflow.graph.sandbox import ScriptSandbox
from nodeflow.runtime.dispatcher import CALLER_TIMEOUT_MESSAGE, LocationDispatcher
from nodeflow.runtime.shared_state import BestEffortState, InMemorySharedState


class FlakyWrites(InMemorySharedState):
    """In-memory store whose first ``failures`` writes raise (all of them when None)."""

    def __init__(self, failures: int | None = None):
        super().__init__()
        self.failures = failures
        self.write_attempts = 0

    async def mutate(self, room_id, update_fn):
        self.write_attempts += 1
        if self.failures is None or self.write_attempts <= self.failures:
            raise StorageSyncError("document store unreachable")
        await super().mutate(room_id, update_fn)


def _setup(nodes: list[dict], caller_timeout: float = 1.0, store: InMemorySharedState | None = None):
    store = store or InMemorySharedState()
    store.create_room("r", nodes=nodes)
    dispatcher = LocationDispatcher(
        BestEffortState(store),
        ScriptSandbox(timeout=1.0),
        poll_interval=0.01,
        caller_timeout=caller_timeout,
    )
    return store, dispatcher


def _data(store: InMemorySharedState, node_id: str) -> dict:
    return store.document("r")["nodes"][node_id]["data"]


async def _node(store: InMemorySharedState, node_id: str):
    return (await store.snapshot("r")).get_node(node_id)


async def _complete_when_pending(store: InMemorySharedState, node_id: str, **fields):
    """Act as a caller: wait for the marker, then write the outcome."""
    while True:
        node = await _node(store, node_id)
        if node.pending_caller_execution:
            break
        await asyncio.sleep(0.005)
    await InMemorySharedState.mutate(
        store,
        "r",
        lambda doc: doc.update_node(
            node_id,
            is_executing=False,
            pending_caller_execution=False,
            caller_input=None,
            **fields,
        ),
    )
    return node


class TestBackendDispatch:
    @pytest.mark.asyncio
    async def test_success_writes_result(self):
        store, dispatcher = _setup([{"id": "a", "data": {"label": "A", "code": "return input * 2"}}])

        result = await dispatcher.dispatch("r", await _node(store, "a"), 21)

        assert result.result == 42
        assert result.error is None
        data = _data(store, "a")
        assert data["lastResult"] == 42
        assert data["isExecuting"] is False
        assert "error" not in data

    @pytest.mark.asyncio
    async def test_error_clears_stale_result(self):
        store, dispatcher = _setup(
            [{"id": "a", "data": {"code": "raise ValueError('bad')", "lastResult": 1}}]
        )

        result = await dispatcher.dispatch("r", await _node(store, "a"), None)

        assert result.failed
        assert result.error == "bad"
        data = _data(store, "a")
        assert data["error"] == "bad"
        assert "lastResult" not in data
        assert data["isExecuting"] is False


class TestCallerDispatch:
    @pytest.mark.asyncio
    async def test_completed_by_caller(self):
        store, dispatcher = _setup([{"id": "c", "data": {"label": "C", "executionMode": "client"}}])
        caller = asyncio.create_task(_complete_when_pending(store, "c", last_result={"done": True}))

        result = await dispatcher.dispatch("r", await _node(store, "c"), {"v": (1, 2)})
        seen = await caller

        assert result.result == {"done": True}
        assert result.error is None
        # The caller received the JSON form of the input
        assert seen.caller_input == {"v": [1, 2]}
        data = _data(store, "c")
        assert data["pendingClientExecution"] is False
        assert "clientInput" not in data

    @pytest.mark.asyncio
    async def test_caller_reported_error(self):
        store, dispatcher = _setup([{"id": "c", "data": {"executionMode": "client"}}])
        caller = asyncio.create_task(_complete_when_pending(store, "c", error="caller failed"))

        result = await dispatcher.dispatch("r", await _node(store, "c"), 1)
        await caller

        assert result.error == "caller failed"
        assert result.result is None

    @pytest.mark.asyncio
    async def test_timeout_clears_marker(self):
        store, dispatcher = _setup([{"id": "c", "data": {"executionMode": "client"}}], caller_timeout=0.05)

        result = await dispatcher.dispatch("r", await _node(store, "c"), {"v": 1})

        assert result.error == CALLER_TIMEOUT_MESSAGE
        data = _data(store, "c")
        assert data["isExecuting"] is False
        assert data["pendingClientExecution"] is False
        assert "timeout" in data["error"]
        assert "clientInput" not in data

    @pytest.mark.asyncio
    async def test_deleted_node_keeps_waiting_until_timeout(self):
        store, dispatcher = _setup([{"id": "c", "data": {"executionMode": "client"}}], caller_timeout=0.05)

        async def delete_node():
            await asyncio.sleep(0.01)
            await store.mutate("r", lambda doc: doc.nodes.pop("c", None))

        deleter = asyncio.create_task(delete_node())
        result = await dispatcher.dispatch("r", await _node(store, "c"), None)
        await deleter

        assert result.error == CALLER_TIMEOUT_MESSAGE


class TestMarkerWriteFailures:
    @pytest.mark.asyncio
    async def test_unpublished_marker_is_not_a_completion(self):
        store, dispatcher = _setup(
            [{"id": "c", "data": {"executionMode": "client", "lastResult": {"stale": True}}}],
            caller_timeout=0.05,
            store=FlakyWrites(),
        )

        result = await dispatcher.dispatch("r", await _node(store, "c"), {"fresh": 1})

        assert result.error == CALLER_TIMEOUT_MESSAGE
        assert result.result is None
        # The marker write was retried while waiting
        assert store.write_attempts > 2

    @pytest.mark.asyncio
    async def test_marker_write_is_retried_until_it_lands(self):
        store, dispatcher = _setup(
            [{"id": "c", "data": {"executionMode": "client", "lastResult": {"stale": True}}}],
            store=FlakyWrites(failures=2),
        )
        caller = asyncio.create_task(_complete_when_pending(store, "c", last_result={"fresh": True}))

        result = await dispatcher.dispatch("r", await _node(store, "c"), {"fresh": 1})
        seen = await caller

        assert result.result == {"fresh": True}
        assert result.error is None
        assert seen.caller_input == {"fresh": 1}


class TestCallerLocks:
    @pytest.mark.asyncio
    async def test_locks_are_released_after_dispatch(self):
        store, dispatcher = _setup(
            [
                {"id": "c", "data": {"executionMode": "client"}},
                {"id": "d", "data": {"executionMode": "client"}},
            ],
            caller_timeout=0.03,
        )

        await dispatcher.dispatch("r", await _node(store, "c"), 1)
        await dispatcher.dispatch("r", await _node(store, "d"), 1)

        assert dispatcher._caller_locks == {}

    @pytest.mark.asyncio
    async def test_concurrent_dispatches_share_one_lock(self):
        store, dispatcher = _setup([{"id": "c", "data": {"executionMode": "client"}}], caller_timeout=0.05)
        node = await _node(store, "c")

        first = asyncio.create_task(dispatcher.dispatch("r", node, 1))
        second = asyncio.create_task(dispatcher.dispatch("r", node, 2))
        await asyncio.sleep(0.01)
        assert len(dispatcher._caller_locks) == 1

        results = await asyncio.gather(first, second)

        assert [r.error for r in results] == [CALLER_TIMEOUT_MESSAGE, CALLER_TIMEOUT_MESSAGE]
        assert dispatcher._caller_locks == {}

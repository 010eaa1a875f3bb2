"""
Tests for the engine HTTP server.
"""

import aiohttp
import pytest

from nodeflow.config import EngineConfig
from nodeflow.graph.coordinator import ExecutionCoordinator
from nodeflow.runtime.server import EngineServer, EngineServerConfig
from nodeflow.runtime.shared_state import InMemorySharedState


def _make_server() -> EngineServer:
    """Helper to create an EngineServer with port=0 for OS-assigned port."""
    store = InMemorySharedState()
    store.create_room(
        "room-1",
        nodes=[
            {"id": "a", "data": {"label": "A", "code": "return {'v': 1}"}},
            {"id": "b", "data": {"label": "B", "code": "return {'v': input['v'] + 1}"}},
            {"id": "bad", "data": {"label": "Bad", "code": "raise ValueError('boom')"}},
        ],
        edges=[{"id": "e1", "source": "a", "target": "b"}],
    )
    config = EngineConfig(liveblocks_secret=None, caller_poll_interval=0.01, caller_timeout=1.0)
    coordinator = ExecutionCoordinator(store, config=config)
    return EngineServer(coordinator, EngineServerConfig(host="127.0.0.1", port=0))


def _base_url(server: EngineServer) -> str:
    """Get the base URL for a running server."""
    return f"http://127.0.0.1:{server.port}"


class TestEngineServerLifecycle:
    """Tests for server start/stop."""

    @pytest.mark.asyncio
    async def test_start_stop(self):
        server = _make_server()

        await server.start()
        assert server.is_running
        assert server.port is not None

        await server.stop()
        assert not server.is_running
        assert server.port is None

    @pytest.mark.asyncio
    async def test_stop_when_not_started(self):
        server = _make_server()

        # Should be a no-op, not raise
        await server.stop()
        assert not server.is_running


class TestExecuteFlowEndpoint:
    @pytest.mark.asyncio
    async def test_runs_flow(self):
        server = _make_server()
        await server.start()

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    f"{_base_url(server)}/api/execute-flow",
                    json={"roomId": "room-1", "startNodeId": "a"},
                ) as resp:
                    assert resp.status == 200
                    assert resp.headers["Access-Control-Allow-Origin"] == "*"
                    body = await resp.json()
        finally:
            await server.stop()

        assert body["success"] is True
        assert body["nodesExecuted"] == 2
        assert body["executionId"].startswith("exec-")
        assert body["results"][1] == {"nodeId": "b", "nodeLabel": "B", "result": {"v": 2}}

    @pytest.mark.asyncio
    async def test_script_error_is_not_a_transport_error(self):
        server = _make_server()
        await server.start()

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    f"{_base_url(server)}/api/execute-flow",
                    json={"roomId": "room-1", "startNodeId": "bad"},
                ) as resp:
                    assert resp.status == 200
                    body = await resp.json()
        finally:
            await server.stop()

        assert body["success"] is False
        assert body["results"] == [{"nodeId": "bad", "nodeLabel": "Bad", "error": "boom"}]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload,status",
        [
            ({"roomId": "room-1"}, 400),
            ({"startNodeId": "a"}, 400),
            ({"roomId": "room-1", "startNodeId": "ghost"}, 404),
            ({"roomId": "nowhere", "startNodeId": "a"}, 404),
        ],
    )
    async def test_request_errors(self, payload, status):
        server = _make_server()
        await server.start()

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(f"{_base_url(server)}/api/execute-flow", json=payload) as resp:
                    assert resp.status == status
                    body = await resp.json()
                    assert "error" in body
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        server = _make_server()
        await server.start()

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    f"{_base_url(server)}/api/execute-flow",
                    data=b"{not json",
                    headers={"Content-Type": "application/json"},
                ) as resp:
                    assert resp.status == 400
        finally:
            await server.stop()


class TestExecuteNodeEndpoint:
    @pytest.mark.asyncio
    async def test_runs_single_node(self):
        server = _make_server()
        await server.start()

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    f"{_base_url(server)}/api/execute",
                    json={"roomId": "room-1", "nodeId": "b", "input": {"v": 41}},
                ) as resp:
                    assert resp.status == 200
                    body = await resp.json()
        finally:
            await server.stop()

        assert body == {
            "success": True,
            "nodeResult": {"nodeId": "b", "nodeLabel": "B", "result": {"v": 42}},
            "children": [],
        }

    @pytest.mark.asyncio
    async def test_missing_node_id(self):
        server = _make_server()
        await server.start()

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    f"{_base_url(server)}/api/execute", json={"roomId": "room-1"}
                ) as resp:
                    assert resp.status == 400
        finally:
            await server.stop()


class TestMiscEndpoints:
    @pytest.mark.asyncio
    async def test_health(self):
        server = _make_server()
        await server.start()

        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(f"{_base_url(server)}/health") as resp:
                    assert resp.status == 200
                    body = await resp.json()
        finally:
            await server.stop()

        assert body["status"] == "ok"
        assert body["timestamp"].endswith("Z")

    @pytest.mark.asyncio
    async def test_cors_preflight(self):
        server = _make_server()
        await server.start()

        try:
            async with aiohttp.ClientSession() as session:
                async with session.options(
                    f"{_base_url(server)}/api/execute-flow",
                    headers={
                        "Origin": "http://localhost:3000",
                        "Access-Control-Request-Method": "POST",
                    },
                ) as resp:
                    assert resp.status == 204
                    assert resp.headers["Access-Control-Allow-Origin"] == "*"
                    assert "POST" in resp.headers["Access-Control-Allow-Methods"]
        finally:
            await server.stop()

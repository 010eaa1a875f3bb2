"""
Engine HTTP Server - exposes executeSingleNode and executeFlow over HTTP.

Uses aiohttp for a lightweight embedded server that runs within the existing
asyncio loop. Routes:

    POST /api/execute       {roomId, nodeId, input}  -> {success, nodeResult, children}
    POST /api/execute-flow  {roomId, startNodeId}    -> {success, executionId, nodesExecuted, results}
    GET  /health                                     -> {status, timestamp}

Browsers call the engine cross-origin, so every response carries permissive
CORS headers and OPTIONS preflights are answered directly.
"""

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from aiohttp import web

from nodeflow.errors import NodeflowError, NotFoundError, ValidationError
from nodeflow.graph.coordinator import ExecutionCoordinator
from nodeflow.observability import clear_trace_context
from nodeflow.schemas.execution import format_timestamp, utc_now

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET,POST,OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type,Authorization",
}

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


@dataclass
class EngineServerConfig:
    """Configuration for the engine HTTP server."""

    host: str = "0.0.0.0"
    port: int = 3001


@web.middleware
async def cors_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    if request.method == "OPTIONS":
        response: web.StreamResponse = web.Response(status=204)
    else:
        response = await handler(request)
    response.headers.update(CORS_HEADERS)
    return response


async def _read_json(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.read()
        payload = json.loads(body) if body else {}
    except (json.JSONDecodeError, UnicodeDecodeError, ValueError) as e:
        raise ValidationError("Request body must be valid JSON") from e
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return payload


def _error_response(error: Exception) -> web.Response:
    if isinstance(error, ValidationError | NotFoundError):
        return web.json_response({"error": str(error)}, status=error.status_code)
    return web.json_response({"error": str(error) or "Unknown error"}, status=500)


class EngineServer:
    """
    Embedded HTTP server in front of an ExecutionCoordinator.

    Lifecycle:
        server = EngineServer(coordinator, EngineServerConfig(port=3001))
        await server.start()
        # ... server running ...
        await server.stop()
    """

    def __init__(
        self,
        coordinator: ExecutionCoordinator,
        config: EngineServerConfig | None = None,
    ):
        self._coordinator = coordinator
        self._config = config or EngineServerConfig()
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

    def build_app(self) -> web.Application:
        """Create the aiohttp application with all routes registered."""
        app = web.Application(middlewares=[cors_middleware])
        app.router.add_post("/api/execute", self._handle_execute)
        app.router.add_post("/api/execute-flow", self._handle_execute_flow)
        app.router.add_get("/health", self._handle_health)
        app.router.add_route("OPTIONS", "/{tail:.*}", self._handle_options)
        return app

    async def start(self) -> None:
        """Start the HTTP server."""
        self._app = self.build_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        self._site = web.TCPSite(
            self._runner,
            self._config.host,
            self._config.port,
        )
        await self._site.start()
        logger.info(f"Execution server running on {self._config.host}:{self.port}")

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            self._app = None
            self._site = None
            logger.info("Execution server stopped")

    async def _handle_execute(self, request: web.Request) -> web.Response:
        """Execute a single node and return its result plus its children."""
        try:
            payload = await _read_json(request)
            result = await self._coordinator.execute_single_node(
                payload.get("roomId"),
                payload.get("nodeId"),
                payload.get("input"),
            )
        except NodeflowError as e:
            return _error_response(e)
        except Exception as e:
            logger.exception("Execution error")
            return _error_response(e)
        finally:
            clear_trace_context()
        return web.json_response(result.to_response())

    async def _handle_execute_flow(self, request: web.Request) -> web.Response:
        """Run a whole flow from the given start node."""
        try:
            payload = await _read_json(request)
            result = await self._coordinator.execute_flow(
                payload.get("roomId"),
                payload.get("startNodeId"),
            )
        except NodeflowError as e:
            return _error_response(e)
        except Exception as e:
            logger.exception("Flow execution error")
            return _error_response(e)
        finally:
            clear_trace_context()
        return web.json_response(result.to_response())

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "ok", "timestamp": format_timestamp(utc_now())})

    async def _handle_options(self, request: web.Request) -> web.Response:
        return web.Response(status=204)

    @property
    def is_running(self) -> bool:
        """Check if the server is running."""
        return self._site is not None

    @property
    def port(self) -> int | None:
        """Return the actual listening port (useful when configured with port=0)."""
        if self._site and self._site._server and self._site._server.sockets:
            return self._site._server.sockets[0].getsockname()[1]
        return None

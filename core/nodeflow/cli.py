"""
Command-line interface for nodeflow.

Usage:
    nodeflow serve --port 3001
    nodeflow serve --store memory --room-file flows/demo.json
    nodeflow run flows/demo.json --start fetch-data
    nodeflow node flows/demo.json transform --input '{"v": 1}'
    nodeflow worker my-room
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from nodeflow.config import EngineConfig
from nodeflow.graph.coordinator import ExecutionCoordinator
from nodeflow.graph.model import find_start_nodes
from nodeflow.observability import configure_logging
from nodeflow.runtime.caller_worker import CallerWorker
from nodeflow.runtime.liveblocks import LiveblocksStateClient
from nodeflow.runtime.server import EngineServer, EngineServerConfig
from nodeflow.runtime.shared_state import InMemorySharedState, SharedStateClient

logger = logging.getLogger(__name__)


def _load_config(args: argparse.Namespace) -> EngineConfig:
    return EngineConfig.load(
        Path(args.config) if args.config else None,
        host=getattr(args, "host", None),
        port=getattr(args, "port", None),
    )


def _load_room(path: str) -> tuple[InMemorySharedState, str]:
    """Load a room JSON file into a fresh in-memory store, keyed by file stem."""
    room_id = Path(path).stem
    state = InMemorySharedState()
    state.load_room(room_id, path)
    return state, room_id


def _liveblocks_state(config: EngineConfig) -> LiveblocksStateClient:
    return LiveblocksStateClient(config.liveblocks_secret, base_url=config.liveblocks_base_url)


def _print_json(data: dict) -> None:
    print(json.dumps(data, indent=2, default=str))


# === COMMANDS ===


def cmd_serve(args: argparse.Namespace) -> int:
    config = _load_config(args)
    if args.store == "memory":
        state: SharedStateClient = InMemorySharedState()
        for room_file in args.room_file or []:
            state.load_room(Path(room_file).stem, room_file)
    else:
        try:
            state = _liveblocks_state(config)
        except ValueError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

    async def serve() -> None:
        coordinator = ExecutionCoordinator(state, config=config)
        server = EngineServer(coordinator, EngineServerConfig(host=config.host, port=config.port))
        await server.start()
        try:
            await asyncio.Event().wait()
        finally:
            await server.stop()
            await coordinator.aclose()

    try:
        asyncio.run(serve())
    except KeyboardInterrupt:
        logger.info("Shutting down")
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    config = _load_config(args)
    state, room_id = _load_room(args.room_file)

    async def run() -> dict:
        coordinator = ExecutionCoordinator(state, config=config)
        try:
            start = args.start
            if start is None:
                snapshot = await state.snapshot(room_id)
                starts = find_start_nodes(snapshot.nodes, snapshot.edges)
                if not starts:
                    raise ValueError("Room has no start node (every node has an incoming edge)")
                start = starts[0].id
            result = await coordinator.execute_flow(room_id, start)
            return result.to_response()
        finally:
            await coordinator.aclose()

    try:
        response = asyncio.run(run())
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.save:
        with open(args.room_file, "w", encoding="utf-8") as f:
            json.dump(state.document(room_id), f, indent=2)
    _print_json(response)
    return 0 if response["success"] else 2


def cmd_node(args: argparse.Namespace) -> int:
    config = _load_config(args)
    state, room_id = _load_room(args.room_file)
    try:
        node_input = json.loads(args.input) if args.input is not None else None
    except json.JSONDecodeError as e:
        print(f"Error: --input is not valid JSON: {e}", file=sys.stderr)
        return 1

    async def run() -> dict:
        coordinator = ExecutionCoordinator(state, config=config)
        try:
            result = await coordinator.execute_single_node(room_id, args.node_id, node_input)
            return result.to_response()
        finally:
            await coordinator.aclose()

    try:
        response = asyncio.run(run())
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    _print_json(response)
    return 0 if response["success"] else 2


def cmd_worker(args: argparse.Namespace) -> int:
    config = _load_config(args)
    try:
        state = _liveblocks_state(config)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    async def work() -> None:
        worker = CallerWorker(state, poll_interval=args.poll_interval or config.caller_poll_interval)
        try:
            await worker.run(args.room_id)
        finally:
            await worker.aclose()

    try:
        asyncio.run(work())
    except KeyboardInterrupt:
        logger.info("Worker stopped")
    return 0


def main():
    parser = argparse.ArgumentParser(
        prog="nodeflow",
        description="nodeflow - Execute collaborative script graphs",
    )
    parser.add_argument("--config", help="Path to configuration.json (default: ~/.nodeflow)")
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    parser.add_argument(
        "--log-format",
        choices=["auto", "json", "human"],
        default="auto",
        help="Log output format",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP execution server")
    serve_parser.add_argument("--host", help="Bind address (default: 0.0.0.0)")
    serve_parser.add_argument("--port", type=int, help="Port (default: $PORT or 3001)")
    serve_parser.add_argument(
        "--store",
        choices=["liveblocks", "memory"],
        default="liveblocks",
        help="Shared document store backing the rooms",
    )
    serve_parser.add_argument(
        "--room-file",
        action="append",
        help="Room JSON file to preload (memory store only, repeatable)",
    )
    serve_parser.set_defaults(func=cmd_serve)

    run_parser = subparsers.add_parser("run", help="Execute a flow from a room JSON file")
    run_parser.add_argument("room_file", help="Room JSON file with nodes and edges")
    run_parser.add_argument("--start", help="Start node id (default: first node without incoming edges)")
    run_parser.add_argument("--save", action="store_true", help="Write node results and history back to the file")
    run_parser.set_defaults(func=cmd_run)

    node_parser = subparsers.add_parser("node", help="Execute a single node from a room JSON file")
    node_parser.add_argument("room_file", help="Room JSON file with nodes and edges")
    node_parser.add_argument("node_id", help="Node to execute")
    node_parser.add_argument("--input", help="Input value as JSON")
    node_parser.set_defaults(func=cmd_node)

    worker_parser = subparsers.add_parser("worker", help="Service caller-located nodes of a Liveblocks room")
    worker_parser.add_argument("room_id", help="Room to watch")
    worker_parser.add_argument("--poll-interval", type=float, help="Seconds between polls")
    worker_parser.set_defaults(func=cmd_worker)

    args = parser.parse_args()
    configure_logging(level=args.log_level.upper(), format=args.log_format)

    if hasattr(args, "func"):
        sys.exit(args.func(args))


if __name__ == "__main__":
    main()

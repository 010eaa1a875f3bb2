"""Graph execution: adjacency model, script sandbox, budgets and the coordinator."""

from nodeflow.graph.budget import ExecutionBudget, TraversalPolicy
from nodeflow.graph.coordinator import ExecutionCoordinator
from nodeflow.graph.model import (
    build_adjacency,
    children_of,
    find_start_nodes,
    reachable_from,
)
from nodeflow.graph.sandbox import ScriptSandbox, json_round_trip

__all__ = [
    "ExecutionBudget",
    "ExecutionCoordinator",
    "ScriptSandbox",
    "TraversalPolicy",
    "build_adjacency",
    "children_of",
    "find_start_nodes",
    "json_round_trip",
    "reachable_from",
]

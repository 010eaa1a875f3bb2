"""
Graph Model - adjacency views over a room's edge collection.

Pure functions, no I/O. Edge order is the collection's natural order, which
is also the order children are visited in.
"""

from collections.abc import Iterable, Mapping

from nodeflow.schemas.flow import Edge, Node


def children_of(node_id: str, edges: Iterable[Edge]) -> list[str]:
    """Return the targets of edges leaving ``node_id``, in edge order.

    An unknown node id yields an empty list. Parallel edges to the same target
    are kept, so the target is visited once per edge.
    """
    return [edge.target for edge in edges if edge.source == node_id]


def build_adjacency(edges: Iterable[Edge]) -> dict[str, list[str]]:
    """Build a source -> ordered list of targets map."""
    adjacency: dict[str, list[str]] = {}
    for edge in edges:
        adjacency.setdefault(edge.source, []).append(edge.target)
    return adjacency


def find_start_nodes(nodes: Mapping[str, Node], edges: Iterable[Edge]) -> list[Node]:
    """Return nodes with no incoming edges, in the node map's order."""
    with_incoming = {edge.target for edge in edges}
    return [node for node_id, node in nodes.items() if node_id not in with_incoming]


def reachable_from(node_id: str, edges: Iterable[Edge]) -> set[str]:
    """Return every node id reachable from ``node_id`` (itself included)."""
    adjacency = build_adjacency(edges)
    seen = {node_id}
    stack = [node_id]
    while stack:
        current = stack.pop()
        for target in adjacency.get(current, []):
            if target not in seen:
                seen.add(target)
                stack.append(target)
    return seen

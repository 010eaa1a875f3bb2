"""
Execution budget - the two counters that guarantee a run terminates.

A flow may contain cycles on purpose, so revisits are allowed. Termination
comes from a per-node cap and a global cap, both counted across the whole
recursive traversal of one run. The budget is an explicit value passed down
the traversal, one per run.
"""

from collections import Counter
from dataclasses import dataclass, field
from enum import StrEnum

from nodeflow.config import DEFAULT_MAX_EXECUTIONS_PER_NODE, DEFAULT_MAX_TOTAL_EXECUTIONS


class TraversalPolicy(StrEnum):
    """How revisits of an already-executed node are treated."""

    CYCLE_TOLERANT = "cycle_tolerant"  # Revisit until a cap trips
    VISIT_ONCE = "visit_once"  # Never revisit a node within a run


@dataclass
class ExecutionBudget:
    """Per-node and global execution counters for a single run."""

    max_per_node: int = DEFAULT_MAX_EXECUTIONS_PER_NODE
    max_total: int = DEFAULT_MAX_TOTAL_EXECUTIONS
    policy: TraversalPolicy = TraversalPolicy.CYCLE_TOLERANT
    total: int = 0
    per_node: Counter = field(default_factory=Counter)

    def exhausted_for(self, node_id: str) -> str | None:
        """Return why ``node_id`` may not run, or None if it may."""
        if self.total >= self.max_total:
            return "max total executions reached"
        count = self.per_node[node_id]
        if count >= self.max_per_node:
            return f"node reached max executions ({self.max_per_node})"
        if self.policy == TraversalPolicy.VISIT_ONCE and count > 0:
            return "node already visited"
        return None

    def consume(self, node_id: str) -> None:
        self.per_node[node_id] += 1
        self.total += 1

    def count(self, node_id: str) -> int:
        return self.per_node[node_id]

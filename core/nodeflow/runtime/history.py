"""
History Recorder - keeps a run's ExecutionRecord current in the room document.

All writes go through BestEffortState: a lost history update is logged and
never interrupts the run that produced it.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic.alias_generators import to_camel

from nodeflow.config import DEFAULT_HISTORY_LIMIT
from nodeflow.runtime.shared_state import BestEffortState, SyncOutcome
from nodeflow.schemas.execution import ExecutionRecord, NodeExecutionResult, format_timestamp

logger = logging.getLogger(__name__)


def _to_document_value(value: Any) -> Any:
    if isinstance(value, NodeExecutionResult):
        return value.to_document()
    if isinstance(value, list):
        return [_to_document_value(v) for v in value]
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, Enum):
        return value.value
    return value


class HistoryRecorder:
    """Creates, advances and finalizes execution records."""

    def __init__(self, state: BestEffortState, limit: int = DEFAULT_HISTORY_LIMIT):
        self.state = state
        self.limit = limit

    async def begin(self, room_id: str, record: ExecutionRecord) -> SyncOutcome:
        """Insert ``record`` at the head of the history, trimming to ``limit``."""
        document = record.to_document()
        return await self.state.mutate(
            room_id,
            lambda doc: doc.insert_history(document, self.limit),
            description=f"add execution record {record.id}",
        )

    async def advance(self, room_id: str, record_id: str, **fields: Any) -> SyncOutcome:
        """Merge snake_case fields into the stored record.

        Typical fields: nodes_executed, results, completed_at, status.
        """
        updates = {to_camel(name): _to_document_value(value) for name, value in fields.items()}
        return await self.state.mutate(
            room_id,
            lambda doc: doc.update_history(record_id, updates),
            description=f"update execution record {record_id}",
        )

    async def finish(self, room_id: str, record: ExecutionRecord) -> SyncOutcome:
        """Write the record's terminal status, completion time and final results."""
        if not record.status.is_terminal:
            raise ValueError(f"Execution record {record.id} is still running")
        logger.info(
            f"Execution {record.id} finished with status {record.status} "
            f"after {record.nodes_executed} node(s) in {record.duration_ms}ms"
        )
        return await self.advance(
            room_id,
            record.id,
            completed_at=record.completed_at,
            status=record.status,
            nodes_executed=record.nodes_executed,
            results=record.results,
        )

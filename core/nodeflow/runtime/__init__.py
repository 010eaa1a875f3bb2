"""Runtime: shared document access, dispatch, history and the HTTP surface."""

from nodeflow.runtime.caller_worker import CallerWorker
from nodeflow.runtime.dispatcher import LocationDispatcher
from nodeflow.runtime.history import HistoryRecorder
from nodeflow.runtime.liveblocks import LiveblocksStateClient
from nodeflow.runtime.shared_state import (
    BestEffortState,
    InMemorySharedState,
    RoomDocument,
    SharedStateClient,
    SyncOutcome,
)

__all__ = [
    "BestEffortState",
    "CallerWorker",
    "HistoryRecorder",
    "InMemorySharedState",
    "LiveblocksStateClient",
    "LocationDispatcher",
    "RoomDocument",
    "SharedStateClient",
    "SyncOutcome",
]

"""
Error taxonomy for the execution engine.

Only ValidationError and NotFoundError abort an operation. Script and dispatch
failures are captured per node and reported in the run's results; storage sync
failures are logged and swallowed by the best-effort state wrapper.
"""


class NodeflowError(Exception):
    """Base class for engine errors."""

    pass


class ValidationError(NodeflowError):
    """A request is missing required fields. The run never starts."""

    status_code = 400


class NotFoundError(NodeflowError):
    """An unknown room or node was referenced. The run never starts."""

    status_code = 404


class ScriptError(NodeflowError):
    """A node's script raised, timed out, or returned a non-serializable value."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class DispatchTimeoutError(ScriptError):
    """A caller-mode node was not completed within the wait window."""

    pass


class StorageSyncError(NodeflowError):
    """The shared document store could not be read or written."""

    pass

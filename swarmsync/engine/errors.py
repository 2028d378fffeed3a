"""Exception hierarchy for the session sync engine.

Each failure mode has its own exception. None of them is fatal:
components raise them internally and the caller at the component
boundary downgrades them to "absent" or "unchanged" for the cycle.
"""
from __future__ import annotations


class SyncError(Exception):
    """Base exception for all sync engine errors."""


class ProcessHostError(SyncError):
    """A call to the terminal multiplexer failed or timed out."""
    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Process host command '{command}' failed: {reason}")


class SignalParseError(SyncError):
    """A signal or question document is malformed."""
    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Malformed document {path}: {reason}")


class PersistenceError(SyncError):
    """The completion store could not be read or written."""
    def __init__(self, task_id: str, reason: str):
        self.task_id = task_id
        self.reason = reason
        super().__init__(
            f"Cannot persist completion bundle for {task_id}: {reason}"
        )


class TransportError(SyncError):
    """Delivering a message to one client failed."""
    def __init__(self, client_id: str, reason: str):
        self.client_id = client_id
        self.reason = reason
        super().__init__(f"Send to client {client_id} failed: {reason}")

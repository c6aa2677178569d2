"""Exception hierarchy for the thread orchestrator.

Each failure mode has its own class and a stable ``kind`` string that
command surfaces report to clients. Caller errors (NotFound, Archived,
InvalidState) are raised immediately and never retried.
"""
from __future__ import annotations


class ThreadsError(Exception):
    """Base exception for all orchestrator errors."""

    kind = "ThreadsError"


class ThreadNotFoundError(ThreadsError):
    """No thread with the given id exists."""

    kind = "NotFound"

    def __init__(self, thread_id: str):
        self.thread_id = thread_id
        super().__init__(f"Thread not found: {thread_id}")


class ThreadArchivedError(ThreadsError):
    """Operation is not allowed on an archived thread."""

    kind = "Archived"

    def __init__(self, thread_id: str, operation: str):
        self.thread_id = thread_id
        self.operation = operation
        super().__init__(
            f"Cannot {operation} thread {thread_id}: thread is archived"
        )


class InvalidStateError(ThreadsError):
    """Operation is not valid for the thread's current lifecycle state."""

    kind = "InvalidState"

    def __init__(self, thread_id: str, reason: str):
        self.thread_id = thread_id
        self.reason = reason
        super().__init__(f"Invalid state for thread {thread_id}: {reason}")


class ProcessSpawnError(ThreadsError):
    """The worker process for a thread could not be started."""

    kind = "ProcessSpawnFailed"

    def __init__(self, thread_id: str, reason: str):
        self.thread_id = thread_id
        self.reason = reason
        super().__init__(f"Failed to spawn worker for thread {thread_id}: {reason}")


class ProcessCrashedError(ThreadsError):
    """The worker process died while bound to a thread."""

    kind = "ProcessCrashed"

    def __init__(self, thread_id: str, reason: str):
        self.thread_id = thread_id
        self.reason = reason
        super().__init__(f"Worker for thread {thread_id} crashed: {reason}")


class NoActiveSessionError(ThreadsError):
    """Input was sent to a thread that has no bound worker."""

    kind = "NoActiveSession"

    def __init__(self, thread_id: str):
        self.thread_id = thread_id
        super().__init__(f"No worker bound to thread {thread_id}")


class PersistenceError(ThreadsError):
    """Durable storage failed after all retries."""

    kind = "PersistenceError"

    def __init__(self, operation: str, target: str, reason: str, attempts: int = 1):
        self.operation = operation
        self.target = target
        self.reason = reason
        self.attempts = attempts
        super().__init__(
            f"{operation} failed for {target} after {attempts} attempt(s): {reason}"
        )

"""Thread lifecycle state machine.

Defines valid transitions and enforces them. Invalid transitions
raise InvalidStateError rather than silently proceeding.

State Diagram:

    IDLE ──> ACTIVE      (worker bound)
    ACTIVE ──> IDLE      (worker torn down: reclaim, crash, cancel)
    IDLE ──> ARCHIVED
    ACTIVE ──> ARCHIVED  (worker killed first)

    ARCHIVED is terminal. Deletion is allowed from IDLE or ARCHIVED.
"""
from __future__ import annotations

from .errors import InvalidStateError
from .models import ThreadStatus

VALID_TRANSITIONS: dict[ThreadStatus, set[ThreadStatus]] = {
    ThreadStatus.IDLE: {
        ThreadStatus.ACTIVE,
        ThreadStatus.ARCHIVED,
    },
    ThreadStatus.ACTIVE: {
        ThreadStatus.IDLE,
        ThreadStatus.ARCHIVED,
    },
    ThreadStatus.ARCHIVED: set(),
}

DELETABLE_STATES = frozenset({ThreadStatus.IDLE, ThreadStatus.ARCHIVED})


def validate_transition(
    thread_id: str, current: ThreadStatus, target: ThreadStatus,
) -> None:
    """Validate a state transition. Raises InvalidStateError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(s.value for s in allowed) or "none (terminal)"
        raise InvalidStateError(
            thread_id,
            f"{current.value} -> {target.value} not allowed "
            f"(allowed from {current.value}: {allowed_str})",
        )


def can_delete(status: ThreadStatus) -> bool:
    return status in DELETABLE_STATES

"""Unread-activity counters for threads that are not visible."""
from __future__ import annotations

from .switch import SwitchController


class ActivityTracker:
    """Counts log entries appended to non-visible threads.

    The counter of a thread is reset when it becomes visible; it never
    goes negative and the visible thread never accumulates.
    """

    def __init__(self, switch: SwitchController) -> None:
        self._switch = switch
        self._counts: dict[str, int] = {}
        switch.subscribe(self._on_switch)

    def _on_switch(self, old_id: str | None, new_id: str | None) -> None:
        if new_id is not None:
            self._counts.pop(new_id, None)

    def record(self, thread_id: str, entries: int = 1) -> int:
        """Count *entries* new log entries for *thread_id*."""
        if entries <= 0 or thread_id == self._switch.active_id:
            return self._counts.get(thread_id, 0)
        self._counts[thread_id] = self._counts.get(thread_id, 0) + entries
        return self._counts[thread_id]

    def count(self, thread_id: str) -> int:
        return self._counts.get(thread_id, 0)

    def forget(self, thread_id: str) -> None:
        self._counts.pop(thread_id, None)

    def snapshot(self) -> dict[str, int]:
        return {tid: n for tid, n in self._counts.items() if n > 0}

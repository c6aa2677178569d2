"""Owns which thread is visible in the UI.

``set_active`` is the only mutator. Listeners are called synchronously,
in subscription order, with ``(old_id, new_id)`` after every change.
"""
from __future__ import annotations

import logging
from typing import Callable

logger = logging.getLogger(__name__)

SwitchListener = Callable[["str | None", "str | None"], None]


class SwitchController:
    """Holds the visible thread id and notifies listeners on change."""

    def __init__(self, active_id: str | None = None) -> None:
        self._active_id = active_id
        self._listeners: list[SwitchListener] = []

    @property
    def active_id(self) -> str | None:
        return self._active_id

    def subscribe(self, listener: SwitchListener) -> Callable[[], None]:
        """Register a listener; returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def set_active(self, thread_id: str | None) -> bool:
        """Make *thread_id* visible. Returns False if it already was."""
        old = self._active_id
        if old == thread_id:
            return False
        self._active_id = thread_id
        logger.debug(
            "Active thread %s -> %s",
            old[:8] if old else None, thread_id[:8] if thread_id else None,
        )
        for listener in list(self._listeners):
            listener(old, thread_id)
        return True

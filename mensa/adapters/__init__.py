"""Adapters package - the event types and the event bus that carry worker
output from the process supervisor to the session registry.
"""
from __future__ import annotations

__all__ = [
    "EventBus",
    "WorkerEvent",
    "event_to_dict",
]

from mensa.adapters.event_bus import EventBus
from mensa.adapters.events import WorkerEvent, event_to_dict

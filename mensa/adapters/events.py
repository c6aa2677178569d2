"""Event types emitted by the process supervisor.

Every event is tagged with the thread it belongs to and the generation
of the binding that produced it. A binding ends with exactly one of
SpawnFailed, Crashed or Unbound.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class WorkerEvent:
    """Base event from a worker binding."""
    event_type: str = ""
    thread_id: str = ""
    generation: int = 0


@dataclass
class Bound(WorkerEvent):
    event_type: str = "bound"
    pid: int | None = None


@dataclass
class SpawnFailed(WorkerEvent):
    event_type: str = "spawn_failed"
    reason: str = ""


@dataclass
class Delta(WorkerEvent):
    event_type: str = "delta"
    text: str = ""


@dataclass
class ToolCallEvent(WorkerEvent):
    event_type: str = "tool_call"
    tool_id: str = ""
    name: str = ""
    input: Any = None


@dataclass
class ToolResultEvent(WorkerEvent):
    event_type: str = "tool_result"
    tool_id: str = ""
    name: str = ""
    result: str = ""
    is_error: bool = False


@dataclass
class SessionInit(WorkerEvent):
    """The worker reported its own session id (used for --resume)."""
    event_type: str = "session_init"
    session_id: str = ""
    slash_commands: list[str] = field(default_factory=list)


@dataclass
class WorkerError(WorkerEvent):
    """A protocol-level error message; the worker keeps running."""
    event_type: str = "worker_error"
    message: str = ""


@dataclass
class Done(WorkerEvent):
    """The in-flight response finished."""
    event_type: str = "done"


@dataclass
class Crashed(WorkerEvent):
    event_type: str = "crashed"
    reason: str = ""
    exit_code: int | None = None


@dataclass
class Unbound(WorkerEvent):
    """The worker was detached (requested unbind or clean exit)."""
    event_type: str = "unbound"
    reason: str = ""
    exit_code: int | None = None


_EVENT_MAP: dict[str, type[WorkerEvent]] = {
    "bound": Bound,
    "spawn_failed": SpawnFailed,
    "delta": Delta,
    "tool_call": ToolCallEvent,
    "tool_result": ToolResultEvent,
    "session_init": SessionInit,
    "worker_error": WorkerError,
    "done": Done,
    "crashed": Crashed,
    "unbound": Unbound,
}

TERMINAL_EVENTS = (SpawnFailed, Crashed, Unbound)


def event_to_dict(event: WorkerEvent) -> dict[str, Any]:
    """Convert a typed event dataclass to a plain dict for JSON serialization."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is not None:
            d[f] = val
    if "event_type" in d:
        d["event"] = d.pop("event_type")
    return d


def dict_to_event(data: dict[str, Any]) -> WorkerEvent:
    """Convert a plain dict back into a typed event dataclass."""
    event_type = data.get("event", "")
    cls = _EVENT_MAP.get(event_type, WorkerEvent)
    valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    if "event" in data and "event_type" not in filtered:
        filtered["event_type"] = data["event"]
    return cls(**filtered)

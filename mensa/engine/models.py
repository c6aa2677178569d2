"""Core data models for the thread orchestrator.

All dataclasses and enums live here. Single source of truth
to avoid circular imports.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

DEFAULT_TITLE = "New conversation"


class ThreadStatus(str, Enum):
    """Thread lifecycle states. See lifecycle.py for transition rules."""
    ACTIVE = "active"
    IDLE = "idle"
    ARCHIVED = "archived"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class PermissionMode(str, Enum):
    """Permission modes understood by the worker CLI."""
    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    BYPASS = "bypassPermissions"
    PLAN = "plan"


def _make_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ThreadMessage:
    """One append-only entry in a thread's message log.

    Entries are never edited after append. Streamed output arrives as
    several assistant entries sharing a ``turn_id``; corrections are new
    entries whose ``amends`` points at the original ``seq``.
    """
    seq: int
    role: MessageRole
    content: str
    turn_id: str | None = None
    id: str = field(default_factory=_make_id)
    timestamp: datetime = field(default_factory=_utcnow)
    interrupted: bool = False
    amends: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolRecord:
    """One append-only tool invocation record (call or result)."""
    seq: int
    kind: str  # "call" or "result"
    tool_id: str
    name: str
    input: Any = None
    result: str | None = None
    is_error: bool = False
    turn_id: str | None = None
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass
class Thread:
    """A conversation with identity, lifecycle and history."""
    workspace_path: str
    id: str = field(default_factory=_make_id)
    title: str = DEFAULT_TITLE
    status: ThreadStatus = ThreadStatus.IDLE
    messages: list[ThreadMessage] = field(default_factory=list)
    tool_activity: list[ToolRecord] = field(default_factory=list)
    preview: str = ""
    is_streaming: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    # Set once the user renames the thread; auto-titling stops.
    title_locked: bool = False
    # Failure reason from the last spawn failure or crash (retry affordance).
    last_error: str | None = None
    # Worker-reported session id, passed back as --resume on re-spawn.
    resume_token: str | None = None
    # False until the on-disk log has been read (lazy loading).
    messages_loaded: bool = True
    # Last durable write failed; in-memory state is authoritative.
    unsaved: bool = False
    # Turn currently streaming, if any.
    current_turn_id: str | None = None

    @property
    def next_message_seq(self) -> int:
        return self.messages[-1].seq + 1 if self.messages else 1

    @property
    def next_tool_seq(self) -> int:
        return self.tool_activity[-1].seq + 1 if self.tool_activity else 1

    @property
    def user_message_count(self) -> int:
        return sum(1 for m in self.messages if m.role == MessageRole.USER)

    def touch(self) -> None:
        self.updated_at = _utcnow()


@dataclass
class ThreadSnapshot:
    """Read-only view of a thread handed to command-surface callers."""
    id: str
    title: str
    workspace_path: str
    status: str
    preview: str
    is_streaming: bool
    created_at: str
    updated_at: str
    message_count: int | None
    unread: int = 0
    last_error: str | None = None
    unsaved: bool = False
    queued: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "workspace_path": self.workspace_path,
            "status": self.status,
            "preview": self.preview,
            "is_streaming": self.is_streaming,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "message_count": self.message_count,
            "unread": self.unread,
            "last_error": self.last_error,
            "unsaved": self.unsaved,
            "queued": self.queued,
        }

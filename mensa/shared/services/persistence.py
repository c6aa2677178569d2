"""Thread persistence — durable metadata records and append-only logs.

Storage layout:
    {base_dir}/threads/{thread_id}.json        metadata record
    {base_dir}/threads/{thread_id}.log.jsonl   append-only message/tool log
    {base_dir}/active_thread                   last visible thread id

Every write is fsynced before returning, so a successful return is a
commit point. Writes are coroutines; transient failures are retried with
bounded exponential backoff before PersistenceError is raised. Reads are
synchronous.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, TypeVar

from mensa.engine.errors import PersistenceError
from mensa.engine.models import (
    DEFAULT_TITLE,
    MessageRole,
    Thread,
    ThreadMessage,
    ThreadStatus,
    ToolRecord,
)
from mensa.shared.services.durable_write import (
    atomic_write_text,
    durable_append_line,
    unlink_durable,
)

logger = logging.getLogger(__name__)

_IMPORTED_BASE_DIR = Path.home() / ".mensa"
BASE_DIR = _IMPORTED_BASE_DIR

METADATA_VERSION = "1"

T = TypeVar("T")


def _resolve_base_dir() -> Path:
    """Resolve base data dir at runtime.

    If tests monkeypatch BASE_DIR, respect it.
    Otherwise, re-evaluate from current HOME so patched HOME environments
    don't keep writing to the import-time path.
    """
    base_dir = Path(BASE_DIR)
    if base_dir != _IMPORTED_BASE_DIR:
        return base_dir
    return Path.home() / ".mensa"


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for storage writes."""
    max_attempts: int = 3
    base_delay: float = 0.05
    max_delay: float = 1.0

    def delay_for(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))


@dataclass(frozen=True)
class SkippedRecord:
    """A record that could not be read during load."""
    path: str
    reason: str


class ThreadPersistence:
    """Save and load thread metadata and logs as JSON files."""

    def __init__(
        self,
        base_dir: Path | None = None,
        retry: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._base_dir = Path(base_dir) if base_dir is not None else _resolve_base_dir()
        self._dir = self._base_dir / "threads"
        self._active_marker = self._base_dir / "active_thread"
        self._retry = retry or RetryPolicy()
        self._sleep = sleep
        self._skipped: list[SkippedRecord] = []
        self._dir.mkdir(parents=True, exist_ok=True)

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    @property
    def threads_dir(self) -> Path:
        return self._dir

    @property
    def skipped_records(self) -> list[SkippedRecord]:
        """Records skipped as corrupt or unreadable by the most recent loads."""
        return list(self._skipped)

    def metadata_path(self, thread_id: str) -> Path:
        return self._dir / f"{thread_id}.json"

    def log_path(self, thread_id: str) -> Path:
        return self._dir / f"{thread_id}.log.jsonl"

    # ── writes ──────────────────────────────────────────────────────

    async def _with_retry(self, operation: str, target: str, fn: Callable[[], T]) -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                return fn()
            except OSError as exc:
                if attempt >= self._retry.max_attempts:
                    logger.error(
                        "%s failed for %s after %d attempt(s): %s",
                        operation, target, attempt, exc,
                    )
                    raise PersistenceError(operation, target, str(exc), attempt) from exc
                delay = self._retry.delay_for(attempt)
                logger.warning(
                    "%s failed for %s on attempt %d/%d; retrying in %.2fs: %s",
                    operation, target, attempt, self._retry.max_attempts, delay, exc,
                )
                await self._sleep(delay)

    async def save_metadata(self, thread: Thread) -> Path:
        """Write the thread's metadata record (messages excluded)."""
        path = self.metadata_path(thread.id)
        payload = json.dumps(_thread_to_dict(thread), indent=2)
        await self._with_retry(
            "save_metadata", thread.id[:8], lambda: atomic_write_text(path, payload),
        )
        logger.debug("Thread metadata saved to %s", path)
        return path

    async def append_message(self, thread_id: str, message: ThreadMessage) -> None:
        line = json.dumps({"type": "message", **message_to_dict(message)})
        path = self.log_path(thread_id)
        await self._with_retry(
            "append_message", thread_id[:8], lambda: durable_append_line(path, line),
        )

    async def append_tool_record(self, thread_id: str, record: ToolRecord) -> None:
        line = json.dumps({"type": "tool", **tool_to_dict(record)})
        path = self.log_path(thread_id)
        await self._with_retry(
            "append_tool_record", thread_id[:8], lambda: durable_append_line(path, line),
        )

    async def save_active_thread_id(self, thread_id: str | None) -> None:
        marker = self._active_marker
        if thread_id is None:
            await self._with_retry(
                "save_active_thread_id", "active_thread", lambda: unlink_durable(marker),
            )
            return
        await self._with_retry(
            "save_active_thread_id",
            "active_thread",
            lambda: atomic_write_text(marker, thread_id),
        )

    async def delete_thread(self, thread_id: str) -> bool:
        """Irreversibly remove a thread's metadata and log."""
        removed_meta = await self._with_retry(
            "delete_thread", thread_id[:8],
            lambda: unlink_durable(self.metadata_path(thread_id)),
        )
        removed_log = await self._with_retry(
            "delete_thread", thread_id[:8],
            lambda: unlink_durable(self.log_path(thread_id)),
        )
        return removed_meta or removed_log

    # ── reads ───────────────────────────────────────────────────────

    def load_active_thread_id(self) -> str | None:
        try:
            value = self._active_marker.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("Failed to read active thread marker: %s", exc)
            return None
        return value or None

    def list_thread_ids(self) -> list[str]:
        return sorted(
            p.name[: -len(".json")] for p in self._dir.glob("*.json")
        )

    def load_all_metadata(self) -> list[Thread]:
        """Load every metadata record, newest first.

        Corrupt or unreadable records are skipped and reported through
        ``skipped_records``; they never abort loading the others.
        """
        self._skipped = [s for s in self._skipped if not s.path.endswith(".json")]
        threads: list[Thread] = []
        for path in sorted(self._dir.glob("*.json")):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                if not isinstance(data, dict):
                    raise ValueError("record is not an object")
                thread = _dict_to_thread(data)
            except (OSError, ValueError, KeyError, TypeError) as exc:
                logger.warning("Skipping unreadable thread record %s: %s", path.name, exc)
                self._skipped.append(SkippedRecord(str(path), str(exc)))
                continue
            threads.append(thread)
        threads.sort(key=lambda t: t.created_at, reverse=True)
        return threads

    def _read_log(self, thread_id: str) -> list[dict[str, Any]]:
        path = self.log_path(thread_id)
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            return []
        records: list[dict[str, Any]] = []
        for lineno, line in enumerate(raw.split(b"\n"), start=1):
            if not line.strip():
                continue
            try:
                record = json.loads(line.decode("utf-8"))
                if not isinstance(record, dict):
                    raise ValueError("record is not an object")
            except ValueError as exc:
                # Typically a torn final line from an interrupted append.
                logger.warning(
                    "Skipping corrupt log line %d in %s: %s", lineno, path.name, exc,
                )
                self._skipped.append(SkippedRecord(f"{path}:{lineno}", str(exc)))
                continue
            records.append(record)
        return records

    def load_messages(self, thread_id: str) -> list[ThreadMessage]:
        messages: list[ThreadMessage] = []
        for record in self._read_log(thread_id):
            if record.get("type") != "message":
                continue
            try:
                messages.append(_dict_to_message(record))
            except (ValueError, KeyError, TypeError) as exc:
                logger.warning("Skipping malformed message in thread %s: %s", thread_id[:8], exc)
                self._skipped.append(SkippedRecord(str(self.log_path(thread_id)), str(exc)))
        _warn_on_gaps(thread_id, [m.seq for m in messages], "message")
        return messages

    def load_tool_activity(self, thread_id: str) -> list[ToolRecord]:
        records: list[ToolRecord] = []
        for record in self._read_log(thread_id):
            if record.get("type") != "tool":
                continue
            try:
                records.append(_dict_to_tool(record))
            except (ValueError, KeyError, TypeError) as exc:
                logger.warning("Skipping malformed tool record in thread %s: %s", thread_id[:8], exc)
        _warn_on_gaps(thread_id, [r.seq for r in records], "tool")
        return records


def _warn_on_gaps(thread_id: str, seqs: list[int], label: str) -> None:
    for expected, actual in enumerate(seqs, start=1):
        if actual != expected:
            logger.warning(
                "Thread %s %s log has a sequence gap: expected %d, found %d",
                thread_id[:8], label, expected, actual,
            )
            return


def _ensure_aware(dt: datetime) -> datetime:
    """Ensure a datetime is timezone-aware (assume UTC if naive)."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    return _ensure_aware(datetime.fromisoformat(value))


def _thread_to_dict(thread: Thread) -> dict[str, Any]:
    # ACTIVE only means "has a running worker"; no worker survives a restart.
    status = ThreadStatus.IDLE if thread.status == ThreadStatus.ACTIVE else thread.status
    return {
        "version": METADATA_VERSION,
        "id": thread.id,
        "title": thread.title,
        "workspace_path": thread.workspace_path,
        "created_at": thread.created_at.isoformat(),
        "updated_at": thread.updated_at.isoformat(),
        "status": status.value,
        "preview": thread.preview,
        "title_locked": thread.title_locked,
        "last_error": thread.last_error,
        "resume_token": thread.resume_token,
    }


def _dict_to_thread(data: dict[str, Any]) -> Thread:
    created_at = _parse_timestamp(data.get("created_at"))
    updated_at = _parse_timestamp(data.get("updated_at")) or created_at
    thread = Thread(
        workspace_path=data["workspace_path"],
        id=str(data["id"]),
        title=data.get("title") or DEFAULT_TITLE,
        status=ThreadStatus(data.get("status", "idle")),
        preview=data.get("preview", ""),
        is_streaming=False,
        title_locked=bool(data.get("title_locked", False)),
        last_error=data.get("last_error"),
        resume_token=data.get("resume_token"),
        messages_loaded=False,
    )
    if thread.status == ThreadStatus.ACTIVE:
        thread.status = ThreadStatus.IDLE
    if created_at:
        thread.created_at = created_at
    if updated_at:
        thread.updated_at = updated_at
    return thread


def message_to_dict(msg: ThreadMessage) -> dict[str, Any]:
    d: dict[str, Any] = {
        "seq": msg.seq,
        "id": msg.id,
        "role": msg.role.value,
        "content": msg.content,
        "turn_id": msg.turn_id,
        "timestamp": msg.timestamp.isoformat(),
    }
    if msg.interrupted:
        d["interrupted"] = True
    if msg.amends is not None:
        d["amends"] = msg.amends
    if msg.metadata:
        d["metadata"] = msg.metadata
    return d


def _dict_to_message(data: dict[str, Any]) -> ThreadMessage:
    return ThreadMessage(
        seq=int(data["seq"]),
        role=MessageRole(data["role"]),
        content=data.get("content", ""),
        turn_id=data.get("turn_id"),
        id=data.get("id", ""),
        timestamp=_ensure_aware(datetime.fromisoformat(data["timestamp"])),
        interrupted=bool(data.get("interrupted", False)),
        amends=data.get("amends"),
        metadata=data.get("metadata") or {},
    )


def tool_to_dict(record: ToolRecord) -> dict[str, Any]:
    return {
        "seq": record.seq,
        "kind": record.kind,
        "tool_id": record.tool_id,
        "name": record.name,
        "input": record.input,
        "result": record.result,
        "is_error": record.is_error,
        "turn_id": record.turn_id,
        "timestamp": record.timestamp.isoformat(),
    }


def _dict_to_tool(data: dict[str, Any]) -> ToolRecord:
    return ToolRecord(
        seq=int(data["seq"]),
        kind=data["kind"],
        tool_id=data.get("tool_id", ""),
        name=data.get("name", "unknown"),
        input=data.get("input"),
        result=data.get("result"),
        is_error=bool(data.get("is_error", False)),
        turn_id=data.get("turn_id"),
        timestamp=_ensure_aware(datetime.fromisoformat(data["timestamp"])),
    )

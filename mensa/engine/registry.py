"""Session registry — owns every thread and its lifecycle.

All state mutations, whether from commands or from worker events, run
under one asyncio.Lock. Worker events arrive on the EventBus and are
applied by a single consumer task, so a command racing a streaming
event can never interleave into a torn update. Supervisor calls that
may block (process teardown) are awaited after the lock is released.

Apart from create and delete, which fail loudly, storage writes never
run under the lock. Each thread's writes are queued and drained in order
by a flush task; commands wait for their own writes after releasing the
lock, while worker events do not.

Listener notifications are collected while the lock is held and fired
after it is released:

    thread_created      {"thread": snapshot}
    thread_updated      {"thread": snapshot}
    thread_removed      {"thread_id"}
    entry_appended      {"thread_id", "kind": "message"|"tool", "entry"}
    active_changed      {"old", "new"}
    persistence_warning {"thread_id", "message"}
"""
from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
import os
import time
import uuid
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any, Callable

from mensa.adapters.event_bus import EventBus
from mensa.adapters.events import (
    Bound,
    Crashed,
    Delta,
    Done,
    SessionInit,
    SpawnFailed,
    ToolCallEvent,
    ToolResultEvent,
    Unbound,
    WorkerError,
    WorkerEvent,
)
from mensa.shared.services.persistence import (
    RetryPolicy,
    ThreadPersistence,
    message_to_dict,
    tool_to_dict,
)
from mensa.shared.services.thread_naming import (
    build_replay_context,
    derive_title,
    is_default_title,
    make_preview,
)

from .activity import ActivityTracker
from .config import EventCallback, ThreadsConfig, fire_event
from .errors import (
    InvalidStateError,
    PersistenceError,
    ThreadArchivedError,
    ThreadNotFoundError,
)
from .lifecycle import can_delete, validate_transition
from .models import (
    DEFAULT_TITLE,
    MessageRole,
    Thread,
    ThreadMessage,
    ThreadSnapshot,
    ThreadStatus,
    ToolRecord,
)
from .supervisor import ProcessSupervisor, WorkerFactory
from .switch import SwitchController

logger = logging.getLogger(__name__)

INTERRUPTED_MARKER = "[response interrupted]"


class SessionRegistry:
    """The command surface over all threads."""

    def __init__(
        self,
        config: ThreadsConfig | None = None,
        *,
        persistence: ThreadPersistence | None = None,
        bus: EventBus | None = None,
        supervisor: ProcessSupervisor | None = None,
        switch: SwitchController | None = None,
        worker_factory: WorkerFactory | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or ThreadsConfig()
        self._store = persistence or ThreadPersistence(
            Path(self._config.data_dir),
            retry=RetryPolicy(
                max_attempts=self._config.persist_max_attempts,
                base_delay=self._config.persist_base_delay_seconds,
                max_delay=self._config.persist_max_delay_seconds,
            ),
        )
        self._bus = bus or EventBus(maxsize=self._config.event_queue_size)
        self._supervisor = supervisor or ProcessSupervisor(
            self._config, self._bus, worker_factory=worker_factory,
        )
        self._switch = switch or SwitchController()
        self._activity = ActivityTracker(self._switch)
        self._clock = clock

        self._lock = asyncio.Lock()
        self._threads: dict[str, Thread] = {}
        self._retired_ids: set[str] = set()
        # Generation of the binding whose events are currently accepted.
        self._generations: dict[str, int] = {}
        # Inputs forwarded but not yet answered by a Done.
        self._awaiting: dict[str, int] = {}
        self._last_activity: dict[str, float] = {}
        # Pending writes per thread, drained in order by one flush task each.
        self._unflushed: dict[str, list[tuple[str, Any]]] = {}
        self._active_dirty = False
        # Flush tasks keyed by thread id; None keys the active-thread pointer.
        self._flushers: dict[str | None, asyncio.Task] = {}
        self._touched: set[str | None] = set()

        self._listeners: list[EventCallback] = []
        self._notes: list[dict[str, Any]] = []
        self._consumer_task: asyncio.Task | None = None
        self._reaper_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()
        self._reclaiming: set[str] = set()
        self._started = False

    # ── wiring ──────────────────────────────────────────────────────

    @property
    def config(self) -> ThreadsConfig:
        return self._config

    @property
    def supervisor(self) -> ProcessSupervisor:
        return self._supervisor

    @property
    def persistence(self) -> ThreadPersistence:
        return self._store

    @property
    def switch_controller(self) -> SwitchController:
        return self._switch

    def add_listener(self, callback: EventCallback) -> Callable[[], None]:
        """Subscribe to state-change notifications. Returns an unsubscribe."""
        self._listeners.append(callback)

        def _remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _remove

    @contextlib.asynccontextmanager
    async def _state(self, wait_writes: bool = True) -> AsyncIterator[None]:
        """Hold the state lock; fire collected notifications afterwards.

        With *wait_writes*, also wait for the writes queued inside the
        block to settle, so a command returns after its commit point.
        """
        async with self._lock:
            try:
                yield
            finally:
                notes, self._notes = self._notes, []
                touched, self._touched = self._touched, set()
        for note in notes:
            for listener in list(self._listeners):
                await fire_event(listener, note)
        if wait_writes:
            for key in touched:
                task = self._flushers.get(key)
                if task is not None and not task.done():
                    await asyncio.shield(task)

    def _note(self, event: str, **payload: Any) -> None:
        self._notes.append({"event": event, **payload})

    def _note_thread(self, thread: Thread, event: str = "thread_updated") -> None:
        self._note(event, thread=self._snapshot(thread).to_dict())

    # ── lifecycle ───────────────────────────────────────────────────

    async def start(self) -> None:
        """Load persisted threads and start the event consumer and reaper."""
        if self._started:
            return
        async with self._state():
            for thread in self._store.load_all_metadata():
                self._threads[thread.id] = thread
            for skipped in self._store.skipped_records:
                self._note(
                    "persistence_warning", thread_id=None,
                    message=f"Skipped unreadable record {skipped.path}: {skipped.reason}",
                )
            active_id = self._store.load_active_thread_id()
            active = self._threads.get(active_id) if active_id else None
            if active is not None and active.status != ThreadStatus.ARCHIVED:
                self._switch.set_active(active.id)
            elif active_id:
                logger.info("Last active thread %s is gone or archived", active_id[:8])
            logger.info(
                "Registry started: %d thread(s) loaded, active=%s",
                len(self._threads), active_id[:8] if active is not None else None,
            )
        self._started = True
        self._consumer_task = asyncio.create_task(
            self._consume_events(), name="registry-event-consumer",
        )
        if self._config.idle_unbind_seconds > 0:
            self._reaper_task = asyncio.create_task(
                self._reap_loop(), name="registry-idle-reaper",
            )

    async def shutdown(self) -> None:
        """Interrupt in-flight responses, stop all workers and tasks."""
        if self._reaper_task is not None:
            self._reaper_task.cancel()
        async with self._state():
            for thread in self._threads.values():
                if self._supervisor.is_bound(thread.id) or thread.status == ThreadStatus.ACTIVE:
                    self._detach(thread)
                    self._write(thread.id, [("meta", None)])
                elif thread.id in self._unflushed:
                    self._write(thread.id, [])
        await self.flush()
        await self._supervisor.shutdown(graceful=False)
        for task in list(self._background):
            task.cancel()
        self._bus.close()
        for task in (self._consumer_task, self._reaper_task):
            if task is not None:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._started = False
        logger.info("Registry shut down")

    # ── commands ────────────────────────────────────────────────────

    async def create(self, workspace_path: str) -> ThreadSnapshot:
        """Create an idle thread. Raises PersistenceError if it cannot be saved."""
        path = os.path.abspath(os.path.expanduser(str(workspace_path)))
        async with self._state():
            thread = Thread(workspace_path=path)
            while thread.id in self._threads or thread.id in self._retired_ids:
                thread.id = str(uuid.uuid4())
            await self._store.save_metadata(thread)
            self._threads[thread.id] = thread
            self._note_thread(thread, "thread_created")
            logger.info("Thread %s created for %s", thread.id[:8], path)
            return self._snapshot(thread)

    async def switch(self, thread_id: str) -> None:
        """Make *thread_id* the visible thread. Idempotent."""
        async with self._state():
            thread = self._require(thread_id)
            if thread.status == ThreadStatus.ARCHIVED:
                raise ThreadArchivedError(thread_id, "switch to")
            self._ensure_loaded(thread)
            old = self._switch.active_id
            if self._switch.set_active(thread_id):
                self._note("active_changed", old=old, new=thread_id)
                self._note_thread(thread)
                self._persist_active()

    async def send(
        self, thread_id: str, text: str, metadata: dict[str, Any] | None = None,
    ) -> ThreadMessage:
        """Record user input and deliver it to the thread's worker.

        Binds a worker if none is bound; when the worker cap is reached
        the bind is queued and the input is delivered once it runs.
        """
        reclaim = False
        async with self._state():
            thread = self._require(thread_id)
            if thread.status == ThreadStatus.ARCHIVED:
                raise ThreadArchivedError(thread_id, "send to")
            self._ensure_loaded(thread)
            replay = build_replay_context(thread.messages)
            message = self._append_message(
                thread, MessageRole.USER, text, metadata=dict(metadata or {}),
            )
            if not thread.title_locked and is_default_title(thread.title):
                thread.title = derive_title(text, self._config.title_max_length)
            thread.last_error = None
            self._last_activity[thread_id] = self._clock()
            self._awaiting[thread_id] = self._awaiting.get(thread_id, 0) + 1

            if self._supervisor.is_bound(thread_id):
                await self._supervisor.send(thread_id, text, metadata)
                if thread.status == ThreadStatus.ACTIVE:
                    thread.is_streaming = True
            else:
                started = await self._supervisor.bind(
                    thread_id,
                    thread.workspace_path,
                    replay,
                    pending_input=text,
                    resume_token=thread.resume_token,
                    pending_metadata=metadata,
                )
                self._generations[thread_id] = self._supervisor.generation_of(thread_id)
                reclaim = not started and self._config.reclaim_on_pressure

            self._write(thread_id, [("message", message), ("meta", None)])
            self._note_thread(thread)

        if reclaim:
            self._spawn_background(self.reclaim_for_pressure(), "registry-reclaim")
        return dataclasses.replace(message)

    async def archive(self, thread_id: str) -> None:
        """Archive a thread, killing its worker. Idempotent."""
        async with self._state():
            thread = self._require(thread_id)
            if thread.status == ThreadStatus.ARCHIVED:
                return
            validate_transition(thread_id, thread.status, ThreadStatus.ARCHIVED)
            had_binding = self._supervisor.is_bound(thread_id)
            self._detach(thread)
            thread.status = ThreadStatus.ARCHIVED
            thread.touch()
            if self._switch.active_id == thread_id:
                self._switch.set_active(None)
                self._note("active_changed", old=thread_id, new=None)
                self._persist_active()
            self._write(thread_id, [("meta", None)])
            self._note_thread(thread)
            logger.info("Thread %s archived", thread_id[:8])
        if had_binding:
            await self._supervisor.unbind(thread_id, graceful=False)

    async def cancel(self, thread_id: str) -> bool:
        """Stop the in-flight response, keeping the thread usable.

        Returns False if no worker was bound.
        """
        async with self._state():
            thread = self._require(thread_id)
            if thread.status == ThreadStatus.ARCHIVED:
                raise ThreadArchivedError(thread_id, "cancel")
            if not self._supervisor.is_bound(thread_id):
                return False
            self._detach(thread)
            self._write(thread_id, [("meta", None)])
            self._note_thread(thread)
            logger.info("Thread %s cancelled", thread_id[:8])
        await self._supervisor.unbind(thread_id, graceful=False)
        return True

    async def delete(self, thread_id: str) -> None:
        """Irreversibly remove an idle or archived thread."""
        async with self._state():
            thread = self._require(thread_id)
            if not can_delete(thread.status):
                raise InvalidStateError(
                    thread_id, f"cannot delete a thread that is {thread.status.value}",
                )
            has_binding = self._supervisor.is_bound(thread_id)
            flusher = self._flushers.pop(thread_id, None)
            if flusher is not None and not flusher.done():
                flusher.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await flusher
            await self._store.delete_thread(thread_id)
            del self._threads[thread_id]
            self._retired_ids.add(thread_id)
            for table in (self._generations, self._awaiting, self._last_activity,
                          self._unflushed):
                table.pop(thread_id, None)
            self._activity.forget(thread_id)
            if self._switch.active_id == thread_id:
                self._switch.set_active(None)
                self._note("active_changed", old=thread_id, new=None)
                self._persist_active()
            self._note("thread_removed", thread_id=thread_id)
            logger.info("Thread %s deleted", thread_id[:8])
        if has_binding:
            await self._supervisor.unbind(thread_id, graceful=False)

    async def rename(self, thread_id: str, title: str) -> None:
        """Set a user title; auto-titling stops. An empty title resets it."""
        async with self._state():
            thread = self._require(thread_id)
            title = " ".join((title or "").split())
            if title:
                thread.title = title
                thread.title_locked = True
            else:
                thread.title = DEFAULT_TITLE
                thread.title_locked = False
            thread.touch()
            self._write(thread_id, [("meta", None)])
            self._note_thread(thread)

    # ── queries ─────────────────────────────────────────────────────

    def list(self) -> list[ThreadSnapshot]:
        """All threads, newest first."""
        threads = sorted(self._threads.values(), key=lambda t: t.created_at, reverse=True)
        return [self._snapshot(t) for t in threads]

    def get(self, thread_id: str) -> ThreadSnapshot:
        return self._snapshot(self._require(thread_id))

    def active(self) -> ThreadSnapshot | None:
        active_id = self._switch.active_id
        if active_id is None or active_id not in self._threads:
            return None
        return self._snapshot(self._threads[active_id])

    def unread_counts(self) -> dict[str, int]:
        return self._activity.snapshot()

    def messages(self, thread_id: str) -> list[ThreadMessage]:
        thread = self._require(thread_id)
        self._ensure_loaded(thread)
        return [dataclasses.replace(m) for m in thread.messages]

    def tool_activity(self, thread_id: str) -> list[ToolRecord]:
        thread = self._require(thread_id)
        self._ensure_loaded(thread)
        return [dataclasses.replace(r) for r in thread.tool_activity]

    # ── resource policy ─────────────────────────────────────────────

    async def reap_idle(self) -> list[str]:
        """Gracefully unbind workers whose thread has been quiet too long."""
        limit = self._config.idle_unbind_seconds
        if limit <= 0:
            return []
        now = self._clock()
        async with self._state():
            victims = [
                tid for tid in self._supervisor.running_thread_ids()
                if self._is_reclaimable(tid)
                and now - self._last_activity.get(tid, now) >= limit
            ]
        for tid in victims:
            logger.info("Unbinding idle worker for thread %s", tid[:8])
            await self._supervisor.unbind(tid, graceful=True)
        return victims

    async def reclaim_for_pressure(self) -> str | None:
        """Free a slot for a queued bind by unbinding the least recently used worker."""
        async with self._state():
            waiting = len(self._supervisor.queued_thread_ids())
            if waiting <= len(self._reclaiming):
                return None
            candidates = [
                tid for tid in self._supervisor.running_thread_ids()
                if tid not in self._reclaiming and self._is_reclaimable(tid)
            ]
            if not candidates:
                return None
            active_id = self._switch.active_id
            victim = min(
                candidates,
                key=lambda tid: (tid == active_id, self._last_activity.get(tid, 0.0)),
            )
            self._reclaiming.add(victim)
        logger.info("Reclaiming worker of thread %s for a queued bind", victim[:8])
        try:
            await self._supervisor.unbind(victim, graceful=True)
        finally:
            self._reclaiming.discard(victim)
        return victim

    def _is_reclaimable(self, thread_id: str) -> bool:
        thread = self._threads.get(thread_id)
        return (
            thread is not None
            and thread.status == ThreadStatus.ACTIVE
            and not thread.is_streaming
            and self._awaiting.get(thread_id, 0) == 0
        )

    async def _reap_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.idle_check_interval_seconds)
            try:
                await self.reap_idle()
            except Exception:
                logger.exception("Idle reaper pass failed")

    def _spawn_background(self, coro: Any, name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ── worker events ───────────────────────────────────────────────

    async def _consume_events(self) -> None:
        async for event in self._bus.consume():
            try:
                async with self._state(wait_writes=False):
                    self._apply(event)
            except Exception:
                logger.exception(
                    "Failed to apply %s for thread %s", event.event_type, event.thread_id[:8],
                )

    def _apply(self, event: WorkerEvent) -> None:
        tid = event.thread_id
        thread = self._threads.get(tid)
        if thread is None or thread.status == ThreadStatus.ARCHIVED:
            logger.debug("Dropping %s for gone/archived thread %s", event.event_type, tid[:8])
            return
        if self._generations.get(tid) != event.generation:
            logger.debug(
                "Dropping stale %s for thread %s (generation %d, current %s)",
                event.event_type, tid[:8], event.generation, self._generations.get(tid),
            )
            return
        self._last_activity[tid] = self._clock()
        self._ensure_loaded(thread)

        if isinstance(event, Bound):
            if thread.status != ThreadStatus.ACTIVE:
                validate_transition(tid, thread.status, ThreadStatus.ACTIVE)
                thread.status = ThreadStatus.ACTIVE
            thread.is_streaming = self._awaiting.get(tid, 0) > 0
            thread.last_error = None
            self._note_thread(thread)
        elif isinstance(event, Delta):
            if not event.text:
                return
            message = self._append_message(
                thread, MessageRole.ASSISTANT, event.text, turn_id=self._turn_id(thread),
            )
            thread.is_streaming = True
            self._write(tid, [("message", message), ("meta", None)])
        elif isinstance(event, (ToolCallEvent, ToolResultEvent)):
            record = self._append_tool(thread, event)
            thread.is_streaming = True
            self._write(tid, [("tool", record), ("meta", None)])
        elif isinstance(event, SessionInit):
            thread.resume_token = event.session_id
            self._write(tid, [("meta", None)])
        elif isinstance(event, WorkerError):
            thread.last_error = event.message
            message = self._append_message(
                thread, MessageRole.SYSTEM, event.message,
                turn_id=thread.current_turn_id, metadata={"error": True},
            )
            self._write(tid, [("message", message), ("meta", None)])
            self._note_thread(thread)
        elif isinstance(event, Done):
            remaining = max(0, self._awaiting.get(tid, 0) - 1)
            self._awaiting[tid] = remaining
            thread.current_turn_id = None
            if remaining == 0:
                thread.is_streaming = False
                if self._config.reclaim_on_pressure and self._supervisor.under_pressure:
                    self._spawn_background(self.reclaim_for_pressure(), "registry-reclaim")
            thread.touch()
            self._write(tid, [("meta", None)])
            self._note_thread(thread)
        elif isinstance(event, (Crashed, SpawnFailed, Unbound)):
            self._end_binding(thread, event)

    def _end_binding(self, thread: Thread, event: WorkerEvent) -> None:
        self._detach(thread)
        if isinstance(event, Crashed):
            thread.last_error = event.reason
            logger.warning("Thread %s worker crashed: %s", thread.id[:8], event.reason)
        elif isinstance(event, SpawnFailed):
            thread.last_error = f"Failed to start worker: {event.reason}"
            logger.warning("Thread %s worker failed to start: %s", thread.id[:8], event.reason)
        self._write(thread.id, [("meta", None)])
        self._note_thread(thread)

    def _detach(self, thread: Thread) -> None:
        """Forget the current binding and settle the thread as idle."""
        if thread.is_streaming or thread.current_turn_id is not None:
            self._mark_interrupted(thread)
        self._generations.pop(thread.id, None)
        self._awaiting.pop(thread.id, None)
        thread.is_streaming = False
        thread.current_turn_id = None
        if thread.status == ThreadStatus.ACTIVE:
            validate_transition(thread.id, thread.status, ThreadStatus.IDLE)
            thread.status = ThreadStatus.IDLE
        thread.touch()

    def _mark_interrupted(self, thread: Thread) -> None:
        turn_id = thread.current_turn_id
        if turn_id is None:
            return
        first = next(
            (m for m in thread.messages
             if m.turn_id == turn_id and m.role == MessageRole.ASSISTANT),
            None,
        )
        if first is None:
            return
        marker = self._append_message(
            thread, MessageRole.SYSTEM, INTERRUPTED_MARKER,
            turn_id=turn_id, interrupted=True, amends=first.seq,
        )
        self._write(thread.id, [("message", marker)])

    def _turn_id(self, thread: Thread) -> str:
        if thread.current_turn_id is None:
            thread.current_turn_id = str(uuid.uuid4())
        return thread.current_turn_id

    # ── helpers ─────────────────────────────────────────────────────

    def _require(self, thread_id: str) -> Thread:
        thread = self._threads.get(thread_id)
        if thread is None:
            raise ThreadNotFoundError(thread_id)
        return thread

    def _ensure_loaded(self, thread: Thread) -> None:
        if thread.messages_loaded:
            return
        thread.messages = self._store.load_messages(thread.id)
        thread.tool_activity = self._store.load_tool_activity(thread.id)
        thread.messages_loaded = True

    def _append_message(
        self,
        thread: Thread,
        role: MessageRole,
        content: str,
        *,
        turn_id: str | None = None,
        interrupted: bool = False,
        amends: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ThreadMessage:
        message = ThreadMessage(
            seq=thread.next_message_seq,
            role=role,
            content=content,
            turn_id=turn_id,
            interrupted=interrupted,
            amends=amends,
            metadata=metadata or {},
        )
        thread.messages.append(message)
        if amends is None:
            preview = make_preview(content, self._config.preview_max_length)
            if preview:
                thread.preview = preview
        thread.touch()
        if role != MessageRole.USER:
            self._activity.record(thread.id)
        self._note(
            "entry_appended", thread_id=thread.id, kind="message",
            entry=message_to_dict(message),
        )
        return message

    def _append_tool(
        self, thread: Thread, event: ToolCallEvent | ToolResultEvent,
    ) -> ToolRecord:
        if isinstance(event, ToolCallEvent):
            record = ToolRecord(
                seq=thread.next_tool_seq, kind="call", tool_id=event.tool_id,
                name=event.name, input=event.input, turn_id=self._turn_id(thread),
            )
        else:
            record = ToolRecord(
                seq=thread.next_tool_seq, kind="result", tool_id=event.tool_id,
                name=event.name, result=event.result, is_error=event.is_error,
                turn_id=self._turn_id(thread),
            )
        thread.tool_activity.append(record)
        thread.touch()
        self._activity.record(thread.id)
        self._note(
            "entry_appended", thread_id=thread.id, kind="tool",
            entry=tool_to_dict(record),
        )
        return record

    def _write(self, thread_id: str, ops: list[tuple[str, Any]]) -> None:
        """Queue *ops* behind any earlier pending writes and start flushing."""
        if thread_id not in self._threads:
            return
        queue = self._unflushed.setdefault(thread_id, [])
        for op in ops:
            if op[0] == "meta" and ("meta", None) in queue[1:]:
                continue
            queue.append(op)
        self._schedule_flush(thread_id)
        if self._active_dirty:
            self._schedule_flush(None)

    def _persist_active(self) -> None:
        self._active_dirty = True
        self._schedule_flush(None)

    def _schedule_flush(self, key: str | None) -> None:
        self._touched.add(key)
        task = self._flushers.get(key)
        if task is not None and not task.done():
            return
        if key is None:
            coro = self._flush_active()
        else:
            coro = self._flush(key)
        self._flushers[key] = asyncio.create_task(coro, name=f"registry-flush-{key}")

    async def flush(self) -> None:
        """Wait until every pending write has been attempted."""
        while True:
            pending = [t for t in self._flushers.values() if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def _flush(self, thread_id: str) -> None:
        """Drain one thread's pending writes in order.

        Stops at the first write that still fails after retries; the
        thread is then flagged unsaved and the next write retries it.
        """
        while True:
            thread = self._threads.get(thread_id)
            queue = self._unflushed.get(thread_id)
            if thread is None:
                return
            while queue:
                kind, item = queue[0]
                try:
                    if kind == "message":
                        await self._store.append_message(thread_id, item)
                    elif kind == "tool":
                        await self._store.append_tool_record(thread_id, item)
                    else:
                        await self._store.save_metadata(thread)
                except PersistenceError as exc:
                    logger.warning(
                        "Thread %s has %d unsaved write(s): %s",
                        thread_id[:8], len(queue), exc,
                    )
                    async with self._state(wait_writes=False):
                        if not thread.unsaved:
                            thread.unsaved = True
                            self._note_thread(thread)
                        self._note("persistence_warning", thread_id=thread_id, message=str(exc))
                    return
                queue.pop(0)
            if self._unflushed.get(thread_id) == []:
                del self._unflushed[thread_id]
            if not thread.unsaved:
                return
            async with self._state(wait_writes=False):
                if thread_id not in self._unflushed:
                    thread.unsaved = False
                    logger.info("Thread %s unsaved writes flushed", thread_id[:8])
                    self._note_thread(thread)
            if thread_id not in self._unflushed:
                return

    async def _flush_active(self) -> None:
        while self._active_dirty:
            self._active_dirty = False
            try:
                await self._store.save_active_thread_id(self._switch.active_id)
            except PersistenceError as exc:
                self._active_dirty = True
                async with self._state(wait_writes=False):
                    self._note("persistence_warning", thread_id=None, message=str(exc))
                return

    def _snapshot(self, thread: Thread) -> ThreadSnapshot:
        return ThreadSnapshot(
            id=thread.id,
            title=thread.title,
            workspace_path=thread.workspace_path,
            status=thread.status.value,
            preview=thread.preview,
            is_streaming=thread.is_streaming,
            created_at=thread.created_at.isoformat(),
            updated_at=thread.updated_at.isoformat(),
            message_count=(
                len(thread.messages) if thread.messages_loaded else None
            ),
            unread=self._activity.count(thread.id),
            last_error=thread.last_error,
            unsaved=thread.unsaved,
            queued=self._supervisor.is_queued(thread.id),
        )

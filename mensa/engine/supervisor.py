"""Process supervisor — binds threads to worker processes.

Owns the worker slot budget. Each binding gets a generation number;
every event it produces is tagged with that generation and pushed onto
the shared EventBus. A binding ends with exactly one terminal event:
SpawnFailed, Crashed or Unbound.

Binding states:

    QUEUED ──> STARTING ──> RUNNING
       │          │            │
       └──────────┴────────────┴──> (finished: slot released)

The slot check-and-reserve happens under the supervisor lock, so two
concurrent binds can never both take the last slot. A freed slot is
handed to the oldest queued binding immediately.
"""
from __future__ import annotations

import asyncio
import collections
import itertools
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Protocol

from mensa.adapters.event_bus import EventBus
from mensa.adapters.events import (
    Bound,
    Crashed,
    Done,
    SpawnFailed,
    Unbound,
    WorkerEvent,
)
from mensa.shared.services.process_cleanup import WORKER_OWNER_ENV, worker_owner

from .config import ThreadsConfig
from .errors import InvalidStateError, NoActiveSessionError
from .stream_parser import StreamParser
from .worker import WorkerProcess, build_worker_argv, replay_line, user_input_line

logger = logging.getLogger(__name__)


class Worker(Protocol):
    """What the supervisor needs from a worker process."""

    pid: int | None

    async def start(self) -> None: ...
    async def write_line(self, line: str) -> None: ...
    async def read_line(self) -> str | None: ...
    async def wait(self) -> int: ...
    async def terminate(self, timeout: float = 5.0) -> int | None: ...

    @property
    def running(self) -> bool: ...

    @property
    def stderr_tail(self) -> str: ...


# (argv, cwd, env) -> Worker
WorkerFactory = Callable[[list[str], str, "dict[str, str] | None"], Worker]


class BindingState(str, Enum):
    QUEUED = "queued"
    STARTING = "starting"
    RUNNING = "running"


@dataclass
class _Binding:
    thread_id: str
    generation: int
    workspace_path: str
    replay_context: list[dict[str, Any]]
    resume_token: str | None = None
    state: BindingState = BindingState.QUEUED
    worker: Worker | None = None
    holds_slot: bool = False
    stop_requested: bool = False
    stop_reason: str = ""
    # Non-graceful unbind: stop forwarding events immediately.
    detached: bool = False
    created_at: float = field(default_factory=time.monotonic)
    outbox: asyncio.Queue[str] = field(default_factory=asyncio.Queue)
    # Set while no response is in flight.
    idle: asyncio.Event = field(default_factory=asyncio.Event)
    finished: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task | None = None


class ProcessSupervisor:
    """Spawn, feed, and tear down one worker process per bound thread."""

    def __init__(
        self,
        config: ThreadsConfig,
        bus: EventBus,
        worker_factory: WorkerFactory | None = None,
    ) -> None:
        self._config = config
        self._bus = bus
        self._worker_factory: WorkerFactory = worker_factory or WorkerProcess
        self._lock = asyncio.Lock()
        self._bindings: dict[str, _Binding] = {}
        self._wait_queue: collections.deque[_Binding] = collections.deque()
        self._slots_in_use = 0
        self._generations = itertools.count(1)
        self._closed = False

    # ── introspection ───────────────────────────────────────────────

    @property
    def capacity(self) -> int | None:
        return self._config.worker_cap

    @property
    def slots_in_use(self) -> int:
        """Slots held by starting, running, or still-terminating workers."""
        return self._slots_in_use

    @property
    def under_pressure(self) -> bool:
        return bool(self._wait_queue)

    def is_bound(self, thread_id: str) -> bool:
        """True if the thread has a binding in any state, queued included."""
        return thread_id in self._bindings

    def is_queued(self, thread_id: str) -> bool:
        binding = self._bindings.get(thread_id)
        return binding is not None and binding.state == BindingState.QUEUED

    def is_idle(self, thread_id: str) -> bool:
        binding = self._bindings.get(thread_id)
        return binding is not None and binding.idle.is_set()

    def generation_of(self, thread_id: str) -> int | None:
        binding = self._bindings.get(thread_id)
        return binding.generation if binding is not None else None

    def queued_thread_ids(self) -> list[str]:
        return [b.thread_id for b in self._wait_queue]

    def running_thread_ids(self) -> list[str]:
        return [
            tid for tid, b in self._bindings.items()
            if b.state == BindingState.RUNNING
        ]

    def pid_of(self, thread_id: str) -> int | None:
        binding = self._bindings.get(thread_id)
        if binding is None or binding.worker is None:
            return None
        return binding.worker.pid

    # ── commands ────────────────────────────────────────────────────

    async def bind(
        self,
        thread_id: str,
        workspace_path: str,
        replay_context: list[dict[str, Any]],
        pending_input: str | None = None,
        resume_token: str | None = None,
        pending_metadata: dict[str, Any] | None = None,
    ) -> bool:
        """Bind a worker to *thread_id*.

        Returns True when a slot was reserved and the spawn started,
        False when the request was queued behind the worker cap. Spawn
        failures are reported as a SpawnFailed event, never raised.
        """
        async with self._lock:
            if self._closed:
                raise InvalidStateError(thread_id, "supervisor is shut down")
            if thread_id in self._bindings:
                raise InvalidStateError(thread_id, "a worker is already bound")
            binding = _Binding(
                thread_id=thread_id,
                generation=next(self._generations),
                workspace_path=workspace_path,
                replay_context=list(replay_context),
                resume_token=resume_token,
            )
            if pending_input is not None:
                binding.outbox.put_nowait(
                    user_input_line(pending_input, self._input_metadata(pending_metadata))
                )
            else:
                binding.idle.set()
            self._bindings[thread_id] = binding

            if self._has_free_slot():
                self._reserve_and_start(binding)
                return True

            self._wait_queue.append(binding)
            logger.info(
                "Worker cap reached (%d/%s); queued bind for thread %s (queue depth %d)",
                self._slots_in_use, self.capacity, thread_id[:8], len(self._wait_queue),
            )
            return False

    async def send(
        self, thread_id: str, text: str, metadata: dict[str, Any] | None = None,
    ) -> None:
        """Forward user input. Buffered until a starting/queued worker is up."""
        binding = self._bindings.get(thread_id)
        if binding is None or binding.stop_requested:
            raise NoActiveSessionError(thread_id)
        binding.idle.clear()
        binding.outbox.put_nowait(user_input_line(text, self._input_metadata(metadata)))

    async def unbind(self, thread_id: str, graceful: bool = True) -> bool:
        """Tear down the thread's binding. Returns False if none existed.

        Graceful: wait for the in-flight response to finish (bounded by
        ``graceful_timeout_seconds``), then terminate. Non-graceful:
        stop forwarding events at once and terminate. Either way the
        worker gets SIGTERM, a bounded wait, then SIGKILL.
        """
        async with self._lock:
            binding = self._bindings.pop(thread_id, None)
            if binding is None:
                return False
            binding.stop_requested = True
            binding.stop_reason = "unbind" if graceful else "killed"
            if not graceful:
                binding.detached = True
            if binding.state == BindingState.QUEUED:
                self._wait_queue.remove(binding)
                dequeued = True
            else:
                dequeued = False

        if dequeued:
            logger.info("Dropped queued bind for thread %s", thread_id[:8])
            try:
                await self._emit(binding, Unbound(reason="dequeued"))
            finally:
                binding.finished.set()
            return True

        logger.info(
            "Unbinding worker for thread %s (generation %d, graceful=%s)",
            thread_id[:8], binding.generation, graceful,
        )
        if graceful and binding.state == BindingState.RUNNING and not binding.idle.is_set():
            try:
                await asyncio.wait_for(
                    binding.idle.wait(), timeout=self._config.graceful_timeout_seconds,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "Thread %s still responding after %.1fs; terminating",
                    thread_id[:8], self._config.graceful_timeout_seconds,
                )
                binding.detached = True
        if binding.worker is not None:
            await binding.worker.terminate(self._config.kill_timeout_seconds)
        await binding.finished.wait()
        return True

    async def shutdown(self, graceful: bool = False) -> None:
        """Unbind every worker and refuse further binds."""
        async with self._lock:
            self._closed = True
            thread_ids = list(self._bindings)
        if thread_ids:
            logger.info("Supervisor shutdown: unbinding %d worker(s)", len(thread_ids))
        await asyncio.gather(
            *(self.unbind(tid, graceful=graceful) for tid in thread_ids),
            return_exceptions=True,
        )

    # ── internals ───────────────────────────────────────────────────

    def _input_metadata(self, metadata: dict[str, Any] | None) -> dict[str, Any]:
        meta: dict[str, Any] = {
            "permissionMode": self._config.permission_mode,
            "maxTurns": self._config.max_turns,
        }
        if metadata:
            meta.update(metadata)
        return meta

    def _has_free_slot(self) -> bool:
        cap = self.capacity
        return cap is None or self._slots_in_use < cap

    def _reserve_and_start(self, binding: _Binding) -> None:
        # Caller holds self._lock.
        self._slots_in_use += 1
        binding.holds_slot = True
        binding.state = BindingState.STARTING
        binding.task = asyncio.create_task(
            self._run_binding(binding),
            name=f"worker-{binding.thread_id[:8]}-g{binding.generation}",
        )

    async def _emit(self, binding: _Binding, event: WorkerEvent) -> None:
        event.thread_id = binding.thread_id
        event.generation = binding.generation
        await self._bus.emit(event)

    async def _run_binding(self, binding: _Binding) -> None:
        tid = binding.thread_id[:8]
        argv = build_worker_argv(self._config, binding.resume_token)
        try:
            env = dict(self._config.worker_env)
            env[WORKER_OWNER_ENV] = worker_owner(self._config.data_dir)
            worker = self._worker_factory(argv, binding.workspace_path, env)
            await worker.start()
        except Exception as exc:
            reason = str(exc) or type(exc).__name__
            logger.warning("Spawn failed for thread %s: %s", tid, reason)
            await self._finish(binding, SpawnFailed(reason=reason))
            return

        binding.worker = worker
        if binding.stop_requested:
            # Unbound while the process was starting.
            await worker.terminate(self._config.kill_timeout_seconds)
            await self._finish(binding, Unbound(reason=binding.stop_reason))
            return

        binding.state = BindingState.RUNNING
        logger.info(
            "Worker bound to thread %s (pid=%s, generation %d, slots %d/%s)",
            tid, worker.pid, binding.generation, self._slots_in_use, self.capacity,
        )
        await self._emit(binding, Bound(pid=worker.pid))

        writer = asyncio.create_task(
            self._write_loop(binding, worker), name=f"worker-writer-{tid}",
        )
        try:
            await self._read_loop(binding, worker)
        finally:
            writer.cancel()

        if worker.running and not binding.stop_requested:
            # stdout closed but the process lingers
            await worker.terminate(self._config.kill_timeout_seconds)
        code = await worker.wait()

        if binding.stop_requested:
            terminal: WorkerEvent = Unbound(reason=binding.stop_reason, exit_code=code)
        elif code == 0:
            logger.info("Worker for thread %s exited", tid)
            terminal = Unbound(reason="exited", exit_code=code)
        else:
            reason = worker.stderr_tail.strip() or f"worker exited with code {code}"
            logger.warning("Worker for thread %s crashed (exit %s): %s", tid, code, reason)
            terminal = Crashed(reason=reason, exit_code=code)
        await self._finish(binding, terminal)

    async def _write_loop(self, binding: _Binding, worker: Worker) -> None:
        try:
            await worker.write_line(replay_line(binding.replay_context))
            while True:
                line = await binding.outbox.get()
                await worker.write_line(line)
        except (ConnectionError, OSError) as exc:
            logger.warning(
                "Failed writing to worker for thread %s: %s", binding.thread_id[:8], exc,
            )

    async def _read_loop(self, binding: _Binding, worker: Worker) -> None:
        parser = StreamParser()
        while True:
            line = await worker.read_line()
            if line is None:
                return
            for event in parser.parse_line(line):
                if isinstance(event, Done):
                    binding.idle.set()
                if binding.detached:
                    continue
                await self._emit(binding, event)

    async def _finish(self, binding: _Binding, event: WorkerEvent) -> None:
        async with self._lock:
            if self._bindings.get(binding.thread_id) is binding:
                del self._bindings[binding.thread_id]
            if binding.holds_slot:
                binding.holds_slot = False
                self._slots_in_use -= 1
            self._service_queue()
        binding.idle.set()
        try:
            await self._emit(binding, event)
        finally:
            binding.finished.set()

    def _service_queue(self) -> None:
        # Caller holds self._lock.
        while self._wait_queue and self._has_free_slot() and not self._closed:
            binding = self._wait_queue.popleft()
            logger.info(
                "Slot freed; starting queued bind for thread %s (waited %.1fs)",
                binding.thread_id[:8], time.monotonic() - binding.created_at,
            )
            self._reserve_and_start(binding)

"""In-memory stand-ins for worker processes used across the test suite."""
from __future__ import annotations

import asyncio
import itertools
import json
from typing import Any, Callable

_pids = itertools.count(40000)


class FakeWorker:
    """Scripted worker: tests push output lines and inspect stdin lines."""

    def __init__(self, argv: list[str], cwd: str, env: dict[str, str] | None = None) -> None:
        self.argv = list(argv)
        self.cwd = cwd
        self.env = env
        self.pid: int | None = None
        self.returncode: int | None = None
        self.written: list[dict[str, Any]] = []
        self.terminated = False
        self.start_error: Exception | None = None
        self.stderr_lines: list[str] = []
        self._out: asyncio.Queue[str | None] = asyncio.Queue()
        self._exited = asyncio.Event()
        self._wrote = asyncio.Event()

    @property
    def running(self) -> bool:
        return self.pid is not None and self.returncode is None

    @property
    def stderr_tail(self) -> str:
        return "\n".join(self.stderr_lines)

    async def start(self) -> None:
        if self.start_error is not None:
            raise self.start_error
        self.pid = next(_pids)

    async def write_line(self, line: str) -> None:
        if not self.running:
            raise ConnectionError("worker stdin is closed")
        self.written.append(json.loads(line))
        self._wrote.set()

    async def read_line(self) -> str | None:
        return await self._out.get()

    async def wait(self) -> int:
        await self._exited.wait()
        assert self.returncode is not None
        return self.returncode

    async def terminate(self, timeout: float = 5.0) -> int | None:
        if self.running:
            self.terminated = True
            self.exit(-15)
        return self.returncode

    # ── test controls ──

    def emit(self, message: dict[str, Any]) -> None:
        self._out.put_nowait(json.dumps(message))

    def emit_raw(self, line: str) -> None:
        self._out.put_nowait(line)

    def delta(self, text: str) -> None:
        self.emit({"type": "delta", "text": text})

    def done(self) -> None:
        self.emit({"type": "done"})

    def exit(self, code: int, stderr: str | None = None) -> None:
        if stderr:
            self.stderr_lines.append(stderr)
        self.returncode = code
        self._out.put_nowait(None)
        self._exited.set()

    def user_inputs(self) -> list[str]:
        return [w["message"]["content"] for w in self.written if w.get("type") == "user"]


class FakeWorkerFactory:
    """Worker factory recording every worker it creates, keyed by cwd."""

    def __init__(self) -> None:
        self.workers: list[FakeWorker] = []
        self.fail_next: Exception | None = None
        self.max_running = 0

    def __call__(self, argv: list[str], cwd: str, env: dict[str, str] | None = None) -> FakeWorker:
        worker = FakeWorker(argv, cwd, env)
        if self.fail_next is not None:
            worker.start_error, self.fail_next = self.fail_next, None
        self.workers.append(worker)
        running = sum(1 for w in self.workers if w.running) + 1
        self.max_running = max(self.max_running, running)
        return worker

    def for_cwd(self, cwd: str) -> list[FakeWorker]:
        return [w for w in self.workers if w.cwd == cwd]

    def latest(self, cwd: str) -> FakeWorker:
        workers = self.for_cwd(cwd)
        assert workers, f"no worker spawned for {cwd}"
        return workers[-1]

    def running(self) -> list[FakeWorker]:
        return [w for w in self.workers if w.running]


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll *predicate* until it is true, failing after *timeout* seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met within %.1fs" % timeout)
        await asyncio.sleep(0.01)

"""One external worker process speaking the JSON-lines protocol.

The process is started in its own session so that teardown can signal
the whole process group (the worker's own tool subprocesses included).
"""
from __future__ import annotations

import asyncio
import collections
import json
import logging
import os
import signal
from pathlib import Path
from typing import Any

from .config import ThreadsConfig

logger = logging.getLogger(__name__)

STDERR_TAIL_LINES = 50


def build_worker_argv(config: ThreadsConfig, resume_token: str | None = None) -> list[str]:
    """Full worker command line for one spawn."""
    argv = list(config.worker_command)
    if config.permission_mode:
        argv.extend(["--permission-mode", config.permission_mode])
    if config.max_turns > 0:
        argv.extend(["--max-turns", str(config.max_turns)])
    if resume_token:
        argv.extend(["--resume", resume_token])
    return argv


def user_input_line(text: str, metadata: dict[str, Any] | None = None) -> str:
    """Encode one user message for the worker's stdin."""
    return json.dumps({
        "type": "user",
        "message": {"role": "user", "content": text},
        "metadata": metadata or {},
    })


def replay_line(turns: list[dict[str, Any]]) -> str:
    """Encode the re-hydration payload sent as the first stdin line."""
    return json.dumps({"type": "replay", "messages": turns})


async def read_line_unbounded(stream: asyncio.StreamReader) -> bytes:
    """Read a full line from *stream* with no size limit.

    Unlike ``StreamReader.readline()``, this never raises
    ``LimitOverrunError``: a single tool result can easily exceed the
    default 64 KiB buffer.
    """
    chunks: list[bytes] = []
    while True:
        try:
            chunk = await stream.readuntil(b"\n")
            chunks.append(chunk)
            return b"".join(chunks)
        except asyncio.LimitOverrunError as exc:
            chunk = await stream.read(exc.consumed)
            chunks.append(chunk)
        except asyncio.IncompleteReadError as exc:
            # EOF before newline
            chunks.append(exc.partial)
            return b"".join(chunks)


class WorkerProcess:
    """Async wrapper around one worker subprocess."""

    def __init__(
        self,
        argv: list[str],
        cwd: str,
        env: dict[str, str] | None = None,
    ) -> None:
        self.argv = list(argv)
        self.cwd = cwd
        self._env = env
        self._proc: asyncio.subprocess.Process | None = None
        self._stderr_tail: collections.deque[str] = collections.deque(
            maxlen=STDERR_TAIL_LINES
        )
        self._stderr_task: asyncio.Task | None = None

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode if self._proc is not None else None

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    @property
    def stderr_tail(self) -> str:
        return "\n".join(self._stderr_tail)

    async def start(self) -> None:
        """Spawn the process. Raises OSError when it cannot be started."""
        workdir = Path(self.cwd)
        if not workdir.exists():
            raise FileNotFoundError(f"workspace does not exist: {self.cwd}")
        if not workdir.is_dir():
            raise NotADirectoryError(f"workspace is not a directory: {self.cwd}")

        env = None
        if self._env:
            env = os.environ.copy()
            env.update(self._env)

        # Array-based exec, no shell
        self._proc = await asyncio.create_subprocess_exec(
            *self.argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self.cwd,
            env=env,
            start_new_session=True,
        )
        self._stderr_task = asyncio.create_task(
            self._drain_stderr(), name=f"worker-stderr-{self._proc.pid}",
        )
        logger.debug("Worker started pid=%s argv=%s cwd=%s", self._proc.pid, self.argv, self.cwd)

    async def _drain_stderr(self) -> None:
        assert self._proc is not None and self._proc.stderr is not None
        while True:
            line = await read_line_unbounded(self._proc.stderr)
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip("\n")
            self._stderr_tail.append(text)
            logger.debug("Worker pid=%s stderr: %s", self._proc.pid, text)

    async def write_line(self, line: str) -> None:
        """Write one line to stdin. Raises ConnectionError if stdin is gone."""
        if self._proc is None or self._proc.stdin is None:
            raise ConnectionError("worker stdin is not open")
        if self._proc.stdin.is_closing():
            raise ConnectionError("worker stdin is closed")
        self._proc.stdin.write((line + "\n").encode("utf-8"))
        await self._proc.stdin.drain()

    async def read_line(self) -> str | None:
        """Next stdout line without its newline, or None at EOF."""
        if self._proc is None or self._proc.stdout is None:
            return None
        raw = await read_line_unbounded(self._proc.stdout)
        if not raw:
            return None
        return raw.decode("utf-8", errors="replace").rstrip("\r\n")

    def close_stdin(self) -> None:
        if self._proc is not None and self._proc.stdin is not None:
            if not self._proc.stdin.is_closing():
                self._proc.stdin.close()

    async def wait(self) -> int:
        assert self._proc is not None
        code = await self._proc.wait()
        if self._stderr_task is not None and not self._stderr_task.done():
            # Let the tail catch the final stderr lines.
            await asyncio.wait({self._stderr_task}, timeout=1.0)
            if not self._stderr_task.done():
                self._stderr_task.cancel()
        return code

    def _signal(self, sig: int) -> None:
        assert self._proc is not None
        try:
            os.killpg(self._proc.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            self._proc.send_signal(sig)

    def kill(self) -> None:
        if self.running:
            self._signal(signal.SIGKILL)

    async def terminate(self, timeout: float = 5.0) -> int | None:
        """SIGTERM the process group, then SIGKILL after *timeout*."""
        if self._proc is None:
            return None
        if self._proc.returncode is not None:
            return self._proc.returncode
        self.close_stdin()
        self._signal(signal.SIGTERM)
        try:
            return await asyncio.wait_for(self.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Worker pid=%s ignored SIGTERM for %.1fs; killing",
                self._proc.pid, timeout,
            )
            self._signal(signal.SIGKILL)
            return await self.wait()

"""Best-effort cleanup of worker processes left behind by a crashed run.

Workers are started in their own session, so when the server dies
without tearing them down they are re-parented to PID 1 and keep
running. At startup we find such orphans by their command line and
SIGTERM them.

Only processes we spawned are touched: every worker carries
``MENSA_WORKER_OWNER=<data dir>`` in its environment, and a candidate
whose environment cannot be read, or names another owner, is left alone.
"""

from __future__ import annotations

import os
import re
import signal
import subprocess
from dataclasses import dataclass
from typing import Callable, Sequence

WORKER_OWNER_ENV = "MENSA_WORKER_OWNER"


@dataclass(frozen=True)
class ProcessInfo:
    pid: int
    ppid: int
    args: str


def worker_owner(data_dir: str) -> str:
    """Owner tag for workers spawned on behalf of *data_dir*."""
    return os.path.abspath(os.path.expanduser(data_dir))


def _list_processes() -> dict[int, ProcessInfo]:
    """Return process table keyed by PID using `ps` output."""
    out = subprocess.check_output(
        ["ps", "-eo", "pid=,ppid=,args="],
        text=True,
        stderr=subprocess.DEVNULL,
    )
    table: dict[int, ProcessInfo] = {}
    for line in out.splitlines():
        parts = line.strip().split(maxsplit=2)
        if len(parts) < 3:
            continue
        try:
            pid = int(parts[0])
            ppid = int(parts[1])
        except ValueError:
            continue
        table[pid] = ProcessInfo(pid=pid, ppid=ppid, args=parts[2])
    return table


def _read_environ(pid: int) -> dict[str, str] | None:
    """Environment of *pid* from /proc, or None if it cannot be read."""
    try:
        with open(f"/proc/{pid}/environ", "rb") as f:
            raw = f.read()
    except OSError:
        return None
    env: dict[str, str] = {}
    for entry in raw.split(b"\0"):
        key, sep, value = entry.partition(b"=")
        if sep:
            env[key.decode("utf-8", "replace")] = value.decode("utf-8", "replace")
    return env


def worker_signature(worker_command: Sequence[str]) -> re.Pattern[str]:
    """Regex matching a command line that starts with *worker_command*.

    The executable may appear with a directory prefix; the remaining
    arguments must follow in order, separated by whitespace.
    """
    if not worker_command:
        raise ValueError("worker_command is empty")
    exe = os.path.basename(worker_command[0])
    parts = [rf"(?:\S*/)?{re.escape(exe)}"]
    parts.extend(re.escape(arg) for arg in worker_command[1:])
    return re.compile(r"^" + r"\s+".join(parts) + r"(?:\s|$)")


def find_stale_workers(
    worker_command: Sequence[str],
    owner: str,
    *,
    current_pid: int | None = None,
    table: dict[int, ProcessInfo] | None = None,
    read_environ: Callable[[int], dict[str, str] | None] = _read_environ,
) -> list[ProcessInfo]:
    """Orphaned processes (parent is PID 1 or missing) running the worker
    command and tagged with *owner*."""
    pid = current_pid or os.getpid()
    procs = table if table is not None else _list_processes()
    signature = worker_signature(worker_command)
    stale: list[ProcessInfo] = []
    for proc in procs.values():
        if proc.pid == pid or not signature.search(proc.args):
            continue
        is_orphan = proc.ppid == 1 or proc.ppid not in procs
        if not is_orphan:
            continue
        env = read_environ(proc.pid)
        if env is not None and env.get(WORKER_OWNER_ENV) == owner:
            stale.append(proc)
    return stale


def cleanup_stale_workers(
    worker_command: Sequence[str],
    data_dir: str,
    *,
    current_pid: int | None = None,
    log: Callable[[str], None] | None = None,
) -> int:
    """SIGTERM orphaned workers spawned for *data_dir*. Returns how many were signalled."""
    logger = log or (lambda _: None)
    killed = 0
    owner = worker_owner(data_dir)
    for proc in find_stale_workers(worker_command, owner, current_pid=current_pid):
        try:
            os.kill(proc.pid, signal.SIGTERM)
            killed += 1
            logger(
                f"Reaped stale worker process pid={proc.pid} "
                f"ppid={proc.ppid} cmd={proc.args[:180]}"
            )
        except ProcessLookupError:
            continue
        except PermissionError as exc:
            logger(f"Failed to reap stale worker pid={proc.pid}: {exc}")
    return killed

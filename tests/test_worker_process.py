"""Worker process tests against real subprocesses."""

from __future__ import annotations

import json
import signal
import sys
from pathlib import Path

import pytest

from mensa.adapters.event_bus import EventBus
from mensa.engine.config import ThreadsConfig
from mensa.engine.supervisor import ProcessSupervisor
from mensa.engine.worker import WorkerProcess, build_worker_argv, replay_line, user_input_line
from worker_fakes import wait_until

FAKE_WORKER = Path(__file__).parent / "fixtures" / "fake_worker.py"


def _worker(tmp_path) -> WorkerProcess:
    return WorkerProcess([sys.executable, str(FAKE_WORKER)], cwd=str(tmp_path))


def test_build_worker_argv_appends_per_spawn_flags() -> None:
    config = ThreadsConfig(worker_command=["agent", "-p"], permission_mode="plan", max_turns=4)
    assert build_worker_argv(config) == [
        "agent", "-p", "--permission-mode", "plan", "--max-turns", "4",
    ]
    assert build_worker_argv(config, "sess-1")[-2:] == ["--resume", "sess-1"]

    bare = ThreadsConfig(worker_command=["agent"], permission_mode="", max_turns=0)
    assert build_worker_argv(bare) == ["agent"]


def test_protocol_lines_are_single_json_objects() -> None:
    line = user_input_line("multi\nline", {"permissionMode": "plan"})
    assert "\n" not in line
    assert json.loads(line) == {
        "type": "user",
        "message": {"role": "user", "content": "multi\nline"},
        "metadata": {"permissionMode": "plan"},
    }
    assert json.loads(replay_line([])) == {"type": "replay", "messages": []}


@pytest.mark.asyncio
async def test_round_trip_through_a_real_process(tmp_path):
    worker = _worker(tmp_path)
    await worker.start()
    assert worker.running
    assert worker.pid is not None

    await worker.write_line(replay_line([{"role": "user", "content": "earlier"}]))
    await worker.write_line(user_input_line("ping"))

    assert json.loads(await worker.read_line())["session_id"] == "fake-session"
    assert json.loads(await worker.read_line()) == {"type": "delta", "text": "[1] ping"}
    assert json.loads(await worker.read_line()) == {"type": "done"}

    code = await worker.terminate(timeout=5.0)
    assert code in (0, -signal.SIGTERM)
    assert not worker.running


@pytest.mark.asyncio
async def test_lines_longer_than_the_stream_limit_are_read_whole(tmp_path):
    worker = _worker(tmp_path)
    await worker.start()
    await worker.write_line(replay_line([]))
    await worker.write_line(user_input_line("big"))

    await worker.read_line()  # session init
    record = json.loads(await worker.read_line())
    assert len(record["text"]) == 200000
    await worker.terminate(timeout=5.0)


@pytest.mark.asyncio
async def test_crash_keeps_a_stderr_tail(tmp_path):
    worker = _worker(tmp_path)
    await worker.start()
    await worker.write_line(replay_line([]))
    await worker.write_line(user_input_line("crash"))

    await worker.read_line()  # session init
    assert await worker.read_line() is None
    assert await worker.wait() == 3
    assert "fatal: asked to crash" in worker.stderr_tail
    assert not worker.running
    assert await worker.terminate() == 3


@pytest.mark.asyncio
async def test_terminate_escalates_to_sigkill(tmp_path):
    script = (
        "import signal, sys, time\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        "print('ready', flush=True)\n"
        "time.sleep(60)\n"
    )
    worker = WorkerProcess([sys.executable, "-c", script], cwd=str(tmp_path))
    await worker.start()
    assert await worker.read_line() == "ready"

    code = await worker.terminate(timeout=0.3)
    assert code == -signal.SIGKILL
    assert not worker.running


@pytest.mark.asyncio
async def test_missing_workspace_fails_to_start(tmp_path):
    worker = WorkerProcess([sys.executable, str(FAKE_WORKER)], cwd=str(tmp_path / "gone"))
    with pytest.raises(FileNotFoundError):
        await worker.start()
    assert worker.pid is None


@pytest.mark.asyncio
async def test_supervisor_drives_a_real_worker(tmp_path):
    config = ThreadsConfig(
        data_dir=str(tmp_path / "data"),
        worker_command=[sys.executable, str(FAKE_WORKER)],
        kill_timeout_seconds=2.0,
        graceful_timeout_seconds=2.0,
    )
    bus = EventBus()
    supervisor = ProcessSupervisor(config, bus)
    events = []

    def seen(event_type: str) -> bool:
        events.extend(bus.drain())
        return any(e.event_type == event_type for e in events)

    await supervisor.bind(
        "t1", str(tmp_path), [{"role": "user", "content": "a"}, {"role": "assistant", "content": "b"}],
        pending_input="hello",
    )
    await wait_until(lambda: seen("done"), timeout=10.0)
    deltas = [e.text for e in events if e.event_type == "delta"]
    assert deltas == ["[2] hello"]
    assert any(e.event_type == "session_init" for e in events)

    await supervisor.unbind("t1", graceful=True)
    assert seen("unbound")
    assert [e.event_type for e in events][-1] == "unbound"
    assert supervisor.slots_in_use == 0

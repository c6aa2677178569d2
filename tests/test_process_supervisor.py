"""Process supervisor tests against scripted in-memory workers."""

from __future__ import annotations

import asyncio

import pytest

from mensa.adapters.event_bus import EventBus
from mensa.adapters.events import WorkerEvent
from mensa.engine.config import ThreadsConfig
from mensa.engine.errors import InvalidStateError, NoActiveSessionError
from mensa.engine.supervisor import ProcessSupervisor
from mensa.shared.services.process_cleanup import WORKER_OWNER_ENV
from worker_fakes import FakeWorker, FakeWorkerFactory, wait_until


def _config(**overrides) -> ThreadsConfig:
    values = dict(
        max_workers=2,
        graceful_timeout_seconds=1.0,
        kill_timeout_seconds=0.5,
        idle_unbind_seconds=0,
    )
    values.update(overrides)
    return ThreadsConfig(**values)


class EventLog:
    """Drains the bus and keeps every event seen so far."""

    def __init__(self, bus: EventBus) -> None:
        self._bus = bus
        self.events: list[WorkerEvent] = []

    def of(self, thread_id: str) -> list[WorkerEvent]:
        self.events.extend(self._bus.drain())
        return [e for e in self.events if e.thread_id == thread_id]

    def types(self, thread_id: str) -> list[str]:
        return [e.event_type for e in self.of(thread_id)]

    def last(self, thread_id: str) -> WorkerEvent:
        return self.of(thread_id)[-1]

    async def wait_for(self, thread_id: str, event_type: str, count: int = 1) -> None:
        await wait_until(lambda: self.types(thread_id).count(event_type) >= count)


def _make(**overrides):
    bus = EventBus()
    factory = FakeWorkerFactory()
    supervisor = ProcessSupervisor(_config(**overrides), bus, worker_factory=factory)
    return supervisor, factory, EventLog(bus)


@pytest.mark.asyncio
async def test_bind_writes_replay_before_pending_input():
    supervisor, factory, log = _make()
    started = await supervisor.bind(
        "t1", "/ws/one",
        [{"role": "user", "content": "earlier"}],
        pending_input="hello",
        resume_token="sess-9",
        pending_metadata={"maxTurns": 3},
    )
    assert started is True

    await log.wait_for("t1", "bound")
    worker = factory.latest("/ws/one")
    await wait_until(lambda: len(worker.written) == 2)

    assert worker.written[0] == {
        "type": "replay", "messages": [{"role": "user", "content": "earlier"}],
    }
    assert worker.written[1]["type"] == "user"
    assert worker.written[1]["message"] == {"role": "user", "content": "hello"}
    assert worker.written[1]["metadata"] == {"permissionMode": "acceptEdits", "maxTurns": 3}
    assert worker.argv[-2:] == ["--resume", "sess-9"]
    assert "--permission-mode" in worker.argv

    bound = log.of("t1")[0]
    assert bound.pid == worker.pid
    assert bound.generation == supervisor.generation_of("t1")
    assert supervisor.pid_of("t1") == worker.pid
    await supervisor.shutdown()


@pytest.mark.asyncio
async def test_workers_carry_the_owner_tag_and_configured_env(tmp_path):
    supervisor, factory, log = _make(
        data_dir=str(tmp_path / "data"), worker_env={"AGENT_TOKEN": "123"},
    )
    await supervisor.bind("t1", "/ws/one", [])
    await log.wait_for("t1", "bound")

    worker = factory.latest("/ws/one")
    assert worker.env == {
        "AGENT_TOKEN": "123",
        WORKER_OWNER_ENV: str(tmp_path / "data"),
    }
    await supervisor.shutdown()


@pytest.mark.asyncio
async def test_events_are_tagged_and_done_marks_idle():
    supervisor, factory, log = _make()
    await supervisor.bind("t1", "/ws/one", [], pending_input="hi")
    await log.wait_for("t1", "bound")
    assert supervisor.is_idle("t1") is False

    worker = factory.latest("/ws/one")
    worker.delta("Hel")
    worker.delta("lo")
    worker.done()
    await log.wait_for("t1", "done")

    generation = supervisor.generation_of("t1")
    events = log.of("t1")
    assert [e.event_type for e in events] == ["bound", "delta", "delta", "done"]
    assert all(e.generation == generation for e in events)
    assert "".join(e.text for e in events if e.event_type == "delta") == "Hello"
    assert supervisor.is_idle("t1") is True
    await supervisor.shutdown()


@pytest.mark.asyncio
async def test_send_forwards_to_bound_worker():
    supervisor, factory, log = _make()
    await supervisor.bind("t1", "/ws/one", [])
    await log.wait_for("t1", "bound")
    assert supervisor.is_idle("t1") is True

    await supervisor.send("t1", "next question", {"permissionMode": "plan"})
    worker = factory.latest("/ws/one")
    await wait_until(lambda: worker.user_inputs() == ["next question"])
    assert worker.written[-1]["metadata"]["permissionMode"] == "plan"
    assert supervisor.is_idle("t1") is False
    await supervisor.shutdown()


@pytest.mark.asyncio
async def test_send_without_binding_raises():
    supervisor, _, _ = _make()
    with pytest.raises(NoActiveSessionError):
        await supervisor.send("missing", "hello")


@pytest.mark.asyncio
async def test_second_bind_for_same_thread_is_rejected():
    supervisor, _, log = _make()
    await supervisor.bind("t1", "/ws/one", [])
    with pytest.raises(InvalidStateError):
        await supervisor.bind("t1", "/ws/one", [])
    await supervisor.shutdown()


@pytest.mark.asyncio
async def test_binds_over_the_cap_are_queued_fifo():
    supervisor, factory, log = _make(max_workers=2)
    results = [
        await supervisor.bind(tid, f"/ws/{tid}", [], pending_input="go")
        for tid in ("a", "b", "c", "d")
    ]
    assert results == [True, True, False, False]
    assert supervisor.queued_thread_ids() == ["c", "d"]
    assert supervisor.is_queued("c") and not supervisor.is_queued("a")
    assert supervisor.slots_in_use == 2
    assert supervisor.under_pressure is True

    await log.wait_for("a", "bound")
    await log.wait_for("b", "bound")
    assert len(factory.workers) == 2

    factory.latest("/ws/a").exit(0)
    await log.wait_for("a", "unbound")
    await log.wait_for("c", "bound")
    assert log.last("a").event_type == "unbound"
    assert log.last("a").reason == "exited"
    assert supervisor.queued_thread_ids() == ["d"]
    assert factory.for_cwd("/ws/d") == []
    assert factory.max_running <= 2
    assert supervisor.slots_in_use == 2
    await supervisor.shutdown()


@pytest.mark.asyncio
async def test_concurrent_binds_never_exceed_the_cap():
    supervisor, factory, _ = _make(max_workers=1)
    results = await asyncio.gather(
        *(supervisor.bind(f"t{i}", f"/ws/{i}", []) for i in range(5))
    )
    assert sum(results) == 1
    assert supervisor.slots_in_use == 1
    assert len(supervisor.queued_thread_ids()) == 4
    await supervisor.shutdown()
    assert factory.max_running == 1


@pytest.mark.asyncio
async def test_unbinding_a_queued_bind_dequeues_it():
    supervisor, factory, log = _make(max_workers=1)
    await supervisor.bind("a", "/ws/a", [])
    assert await supervisor.bind("b", "/ws/b", [], pending_input="waiting") is False

    assert await supervisor.unbind("b") is True
    assert log.types("b") == ["unbound"]
    assert log.last("b").reason == "dequeued"
    assert not supervisor.is_bound("b")
    assert supervisor.queued_thread_ids() == []
    assert factory.for_cwd("/ws/b") == []
    assert await supervisor.unbind("b") is False
    await supervisor.shutdown()


@pytest.mark.asyncio
async def test_graceful_unbind_waits_for_the_response_to_finish():
    supervisor, factory, log = _make()
    await supervisor.bind("t1", "/ws/one", [], pending_input="work")
    await log.wait_for("t1", "bound")
    worker = factory.latest("/ws/one")

    unbind = asyncio.create_task(supervisor.unbind("t1", graceful=True))
    await asyncio.sleep(0.05)
    assert not worker.terminated
    assert not supervisor.is_bound("t1")

    worker.delta("final words")
    worker.done()
    assert await unbind is True

    assert worker.terminated
    assert log.types("t1") == ["bound", "delta", "done", "unbound"]
    assert log.last("t1").reason == "unbind"
    assert supervisor.slots_in_use == 0


@pytest.mark.asyncio
async def test_graceful_unbind_gives_up_after_timeout():
    supervisor, factory, log = _make(graceful_timeout_seconds=0.05)
    await supervisor.bind("t1", "/ws/one", [], pending_input="long task")
    await log.wait_for("t1", "bound")

    await supervisor.unbind("t1", graceful=True)
    assert factory.latest("/ws/one").terminated
    assert log.types("t1") == ["bound", "unbound"]


@pytest.mark.asyncio
async def test_forced_unbind_drops_pending_output():
    supervisor, factory, log = _make()
    await supervisor.bind("t1", "/ws/one", [], pending_input="go")
    await log.wait_for("t1", "bound")
    worker = factory.latest("/ws/one")
    worker.delta("before")
    await log.wait_for("t1", "delta")

    worker.delta("late")
    await supervisor.unbind("t1", graceful=False)

    events = log.of("t1")
    assert [e.text for e in events if e.event_type == "delta"] == ["before"]
    assert events[-1].event_type == "unbound"
    assert events[-1].reason == "killed"


@pytest.mark.asyncio
async def test_crash_reports_stderr_and_frees_the_slot():
    supervisor, factory, log = _make(max_workers=1)
    await supervisor.bind("a", "/ws/a", [], pending_input="go")
    await supervisor.bind("b", "/ws/b", [], pending_input="go")
    await log.wait_for("a", "bound")

    factory.latest("/ws/a").exit(2, stderr="Traceback: boom")
    await log.wait_for("a", "crashed")
    crashed = log.last("a")
    assert crashed.reason == "Traceback: boom"
    assert crashed.exit_code == 2
    assert not supervisor.is_bound("a")

    await log.wait_for("b", "bound")
    await supervisor.shutdown()


@pytest.mark.asyncio
async def test_crash_without_stderr_reports_exit_code():
    supervisor, factory, log = _make()
    await supervisor.bind("a", "/ws/a", [])
    await log.wait_for("a", "bound")
    factory.latest("/ws/a").exit(137)
    await log.wait_for("a", "crashed")
    assert "137" in log.last("a").reason


@pytest.mark.asyncio
async def test_spawn_failure_is_an_event_not_an_exception():
    supervisor, factory, log = _make(max_workers=1)
    factory.fail_next = FileNotFoundError("no such executable: claude")

    assert await supervisor.bind("a", "/ws/a", [], pending_input="hi") is True
    await log.wait_for("a", "spawn_failed")
    assert "no such executable" in log.last("a").reason
    assert log.types("a") == ["spawn_failed"]
    assert supervisor.slots_in_use == 0
    assert not supervisor.is_bound("a")

    assert await supervisor.bind("a", "/ws/a", []) is True
    await log.wait_for("a", "bound")
    await supervisor.shutdown()


@pytest.mark.asyncio
async def test_each_binding_gets_a_new_generation():
    supervisor, _, log = _make()
    await supervisor.bind("a", "/ws/a", [])
    first = supervisor.generation_of("a")
    await log.wait_for("a", "bound")
    await supervisor.unbind("a", graceful=False)
    assert supervisor.generation_of("a") is None

    await supervisor.bind("a", "/ws/a", [])
    second = supervisor.generation_of("a")
    assert second > first
    await log.wait_for("a", "bound", count=2)
    assert log.last("a").generation == second
    await supervisor.shutdown()


@pytest.mark.asyncio
async def test_unbind_while_starting_terminates_without_bound_event():
    gate = asyncio.Event()
    created: list[FakeWorker] = []

    class SlowWorker(FakeWorker):
        async def start(self) -> None:
            await gate.wait()
            await super().start()

    def factory(argv, cwd, env=None):
        worker = SlowWorker(argv, cwd, env)
        created.append(worker)
        return worker

    bus = EventBus()
    log = EventLog(bus)
    supervisor = ProcessSupervisor(_config(), bus, worker_factory=factory)
    await supervisor.bind("a", "/ws/a", [], pending_input="hi")
    unbind = asyncio.create_task(supervisor.unbind("a", graceful=False))
    await asyncio.sleep(0.02)
    gate.set()
    await unbind

    assert created[0].terminated
    assert log.types("a") == ["unbound"]
    assert log.last("a").reason == "killed"
    assert supervisor.slots_in_use == 0


@pytest.mark.asyncio
async def test_shutdown_stops_workers_and_refuses_binds():
    supervisor, factory, log = _make()
    await supervisor.bind("a", "/ws/a", [])
    await supervisor.bind("b", "/ws/b", [])
    await log.wait_for("a", "bound")
    await log.wait_for("b", "bound")

    await supervisor.shutdown()
    assert all(w.terminated for w in factory.workers)
    assert supervisor.slots_in_use == 0
    with pytest.raises(InvalidStateError):
        await supervisor.bind("c", "/ws/c", [])

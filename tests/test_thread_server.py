from __future__ import annotations

import json
import tempfile
from pathlib import Path

from aiohttp.test_utils import AioHTTPTestCase

from mensa.engine.config import ThreadsConfig
from mensa.engine.errors import (
    InvalidStateError,
    PersistenceError,
    ThreadArchivedError,
    ThreadNotFoundError,
)
from mensa.engine.registry import SessionRegistry
from mensa.server.server import ThreadServer, status_for_error
from worker_fakes import FakeWorkerFactory, wait_until


def test_error_kinds_map_to_http_status() -> None:
    assert status_for_error(ThreadNotFoundError("x")) == 404
    assert status_for_error(ThreadArchivedError("x", "switch to")) == 409
    assert status_for_error(InvalidStateError("x", "busy")) == 409
    assert status_for_error(PersistenceError("save", "x", "disk full")) == 503


class TestThreadServer(AioHTTPTestCase):
    async def get_application(self):
        self.tmpdir = tempfile.mkdtemp()
        self.root = Path(self.tmpdir)
        (self.root / "ws").mkdir()
        self.factory = FakeWorkerFactory()
        config = ThreadsConfig(
            data_dir=str(self.root / "data"),
            max_workers=2,
            idle_unbind_seconds=0,
            kill_timeout_seconds=0.5,
        )
        self.registry = SessionRegistry(config, worker_factory=self.factory)
        self.thread_server = ThreadServer(
            self.registry, default_workspace=str(self.root / "ws"),
        )
        return self.thread_server.app

    async def _create(self, workspace: str | None = None) -> dict:
        body = {"workspace_path": workspace} if workspace else {}
        resp = await self.client.post("/threads", json=body)
        assert resp.status == 201
        return await resp.json()

    async def test_health_reports_worker_slots(self):
        resp = await self.client.get("/health")
        assert resp.status == 200
        data = await resp.json()
        assert data["status"] == "ok"
        assert data["threads"] == 0
        assert data["workers"] == {"in_use": 0, "capacity": 2, "queued": 0}

    async def test_create_uses_default_workspace(self):
        thread = await self._create()
        assert thread["workspace_path"] == str(self.root / "ws")
        assert thread["status"] == "idle"

        other = await self._create(str(self.root / "elsewhere"))
        assert other["workspace_path"] == str(self.root / "elsewhere")

        resp = await self.client.get("/threads")
        ids = {t["id"] for t in (await resp.json())["threads"]}
        assert ids == {thread["id"], other["id"]}

    async def test_unknown_thread_is_404_with_kind(self):
        resp = await self.client.get("/threads/does-not-exist")
        assert resp.status == 404
        data = await resp.json()
        assert data["kind"] == "NotFound"
        assert "does-not-exist" in data["error"]

    async def test_send_records_message_and_binds_worker(self):
        thread = await self._create()
        tid = thread["id"]

        resp = await self.client.post(f"/threads/{tid}/messages", json={"text": "Run the tests"})
        assert resp.status == 202
        data = await resp.json()
        assert data["message"]["role"] == "user"
        assert data["message"]["seq"] == 1
        assert data["thread"]["title"] == "Run the tests"

        await wait_until(lambda: len(self.factory.workers) == 1)
        worker = self.factory.workers[0]
        await wait_until(lambda: worker.user_inputs() == ["Run the tests"])
        worker.delta("All green.")
        worker.done()
        await wait_until(lambda: len(self.registry.messages(tid)) == 2)

        resp = await self.client.get(f"/threads/{tid}/messages")
        data = await resp.json()
        assert [m["content"] for m in data["messages"]] == ["Run the tests", "All green."]
        assert data["tool_activity"] == []

    async def test_send_validates_body(self):
        thread = await self._create()
        tid = thread["id"]

        resp = await self.client.post(f"/threads/{tid}/messages", json={"text": "  "})
        assert resp.status == 400

        resp = await self.client.post(
            f"/threads/{tid}/messages", data="{oops", headers={"Content-Type": "application/json"},
        )
        assert resp.status == 400
        assert "Invalid JSON" in (await resp.json())["error"]

        resp = await self.client.post(
            f"/threads/{tid}/messages", json={"text": "hi", "metadata": ["nope"]},
        )
        assert resp.status == 400

    async def test_switch_active_and_unread(self):
        a = await self._create()
        b = await self._create()

        resp = await self.client.post(f"/threads/{a['id']}/switch")
        assert resp.status == 200
        resp = await self.client.get("/active")
        assert (await resp.json())["active"]["id"] == a["id"]

        await self.client.post(f"/threads/{b['id']}/messages", json={"text": "background"})
        await wait_until(lambda: len(self.factory.workers) == 1)
        self.factory.workers[0].delta("busy")
        await wait_until(lambda: self.registry.unread_counts() == {b["id"]: 1})

        resp = await self.client.get("/unread")
        assert (await resp.json())["unread"] == {b["id"]: 1}

    async def test_archived_thread_rejects_switch_with_409(self):
        thread = await self._create()
        tid = thread["id"]

        resp = await self.client.post(f"/threads/{tid}/archive")
        assert resp.status == 200
        assert (await resp.json())["status"] == "archived"

        resp = await self.client.post(f"/threads/{tid}/switch")
        assert resp.status == 409
        assert (await resp.json())["kind"] == "Archived"

        resp = await self.client.get("/threads", params={"archived": "0"})
        assert (await resp.json())["threads"] == []

    async def test_delete_bound_thread_conflicts_until_cancelled(self):
        thread = await self._create()
        tid = thread["id"]
        await self.client.post(f"/threads/{tid}/messages", json={"text": "work"})
        await wait_until(lambda: self.registry.get(tid).status == "active")

        resp = await self.client.delete(f"/threads/{tid}")
        assert resp.status == 409
        assert (await resp.json())["kind"] == "InvalidState"

        resp = await self.client.post(f"/threads/{tid}/cancel")
        assert (await resp.json())["cancelled"] is True

        resp = await self.client.delete(f"/threads/{tid}")
        assert resp.status == 200
        resp = await self.client.get(f"/threads/{tid}")
        assert resp.status == 404

    async def test_rename(self):
        thread = await self._create()
        tid = thread["id"]

        resp = await self.client.patch(f"/threads/{tid}", json={"title": "Deploy notes"})
        assert resp.status == 200
        assert (await resp.json())["title"] == "Deploy notes"

        resp = await self.client.patch(f"/threads/{tid}", json={})
        assert resp.status == 400

    async def test_event_stream_sends_hello_then_updates(self):
        existing = await self._create()
        resp = await self.client.get("/events")
        assert resp.status == 200
        assert resp.headers["Content-Type"].startswith("text/event-stream")

        assert await resp.content.readline() == b"event: connected\n"
        hello = json.loads((await resp.content.readline())[len(b"data: "):])
        assert [t["id"] for t in hello["threads"]] == [existing["id"]]
        assert hello["active"] is None
        assert await resp.content.readline() == b"\n"

        created = await self.registry.create(str(self.root / "ws"))
        assert await resp.content.readline() == b"event: thread_created\n"
        payload = json.loads((await resp.content.readline())[len(b"data: "):])
        assert payload["thread"]["id"] == created.id
        resp.close()

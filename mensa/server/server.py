"""HTTP + SSE server exposing the thread registry.

REST endpoints mirror the registry commands and queries; registry
notifications are fanned out to every connected /events client.

Usage:
    mensa --server [--port PORT]
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import time
import uuid
from typing import Any

from aiohttp import web

from mensa.engine.errors import (
    InvalidStateError,
    NoActiveSessionError,
    PersistenceError,
    ProcessCrashedError,
    ProcessSpawnError,
    ThreadArchivedError,
    ThreadNotFoundError,
    ThreadsError,
)
from mensa.engine.registry import SessionRegistry
from mensa.shared.services.persistence import message_to_dict, tool_to_dict

logger = logging.getLogger(__name__)

_ERROR_STATUS: dict[type[ThreadsError], int] = {
    ThreadNotFoundError: 404,
    ThreadArchivedError: 409,
    InvalidStateError: 409,
    NoActiveSessionError: 409,
    ProcessSpawnError: 502,
    ProcessCrashedError: 502,
    PersistenceError: 503,
}


def status_for_error(exc: ThreadsError) -> int:
    for cls in type(exc).__mro__:
        if cls in _ERROR_STATUS:
            return _ERROR_STATUS[cls]
    return 500


class ThreadServer:
    """aiohttp application wrapping one SessionRegistry."""

    def __init__(
        self,
        registry: SessionRegistry,
        host: str = "127.0.0.1",
        port: int = 0,
        default_workspace: str | None = None,
    ) -> None:
        self._registry = registry
        self._host = host
        self._port = port
        self._default_workspace = default_workspace or os.getcwd()
        self._sse_queues: list[asyncio.Queue[dict[str, Any]]] = []
        self._started_at = time.time()
        self._remove_listener = registry.add_listener(self._on_registry_event)
        self._app = web.Application(
            middlewares=[self._request_logging_middleware, self._error_middleware],
        )
        self._app.on_startup.append(self._on_startup)
        self._app.on_cleanup.append(self._on_cleanup)
        self._setup_routes()
        logger.info(
            "ThreadServer init host=%s port=%s workspace=%s pid=%s",
            self._host, self._port, self._default_workspace, os.getpid(),
        )

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def port(self) -> int:
        return self._port

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-mensa-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        try:
            return await handler(request)
        except ThreadsError as exc:
            status = status_for_error(exc)
            logger.info("HTTP %s %s -> %d %s: %s", request.method, request.path, status, exc.kind, exc)
            return web.json_response({"error": str(exc), "kind": exc.kind}, status=status)

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/events", self._handle_sse)
        r.add_get("/threads", self._handle_list_threads)
        r.add_post("/threads", self._handle_create_thread)
        r.add_get("/threads/{id}", self._handle_get_thread)
        r.add_patch("/threads/{id}", self._handle_rename_thread)
        r.add_delete("/threads/{id}", self._handle_delete_thread)
        r.add_post("/threads/{id}/switch", self._handle_switch)
        r.add_get("/threads/{id}/messages", self._handle_get_messages)
        r.add_post("/threads/{id}/messages", self._handle_send)
        r.add_post("/threads/{id}/archive", self._handle_archive)
        r.add_post("/threads/{id}/cancel", self._handle_cancel)
        r.add_get("/active", self._handle_active)
        r.add_get("/unread", self._handle_unread)

    # ── Lifecycle ──

    async def _on_startup(self, app: web.Application) -> None:
        await self._registry.start()

    async def _on_cleanup(self, app: web.Application) -> None:
        self._remove_listener()
        await self._registry.shutdown()

    async def start(self) -> None:
        """Start the server, print the port to stdout, and serve until cancelled."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()

        actual_port = self._resolve_port(site, runner)
        if actual_port is None:
            raise RuntimeError("mensa server started but no listening socket was reported.")
        self._port = actual_port

        sys.stdout.write(json.dumps({"port": actual_port}) + "\n")
        sys.stdout.flush()
        logger.info("mensa server listening on %s:%d", self._host, actual_port)

        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await runner.cleanup()

    @staticmethod
    def _resolve_port(site, runner) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        if sockets:
            return sockets[0].getsockname()[1]
        addresses = getattr(runner, "addresses", None) or ()
        if addresses:
            first = addresses[0]
            if isinstance(first, tuple) and len(first) >= 2:
                return int(first[1])
        return None

    # ── SSE fan-out ──

    async def _on_registry_event(self, event: dict[str, Any]) -> None:
        payload = dict(event)
        event_type = payload.pop("event")
        self._broadcast_sse(event_type, payload)

    def _broadcast_sse(self, event_type: str, data: dict[str, Any]) -> None:
        msg = {"event": event_type, "data": data}
        for queue in self._sse_queues:
            try:
                queue.put_nowait(msg)
            except asyncio.QueueFull:
                logger.warning("SSE queue full, dropping event")

    # ── HTTP handlers ──

    @staticmethod
    async def _json_body(request: web.Request) -> dict[str, Any]:
        if not request.can_read_body:
            return {}
        try:
            body = await request.json()
        except json.JSONDecodeError as exc:
            raise web.HTTPBadRequest(
                text=json.dumps({"error": f"Invalid JSON body: {exc}"}),
                content_type="application/json",
            ) from exc
        if not isinstance(body, dict):
            raise web.HTTPBadRequest(
                text=json.dumps({"error": "JSON body must be an object"}),
                content_type="application/json",
            )
        return body

    async def _handle_health(self, request: web.Request) -> web.Response:
        supervisor = self._registry.supervisor
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "threads": len(self._registry.list()),
            "workers": {
                "in_use": supervisor.slots_in_use,
                "capacity": supervisor.capacity,
                "queued": len(supervisor.queued_thread_ids()),
            },
        })

    async def _handle_sse(self, request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "Access-Control-Allow-Origin": "*",
            },
        )
        await response.prepare(request)

        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=5000)
        self._sse_queues.append(queue)
        logger.info("SSE client connected req=%s active_clients=%d", request.get("req_id", "unknown"), len(self._sse_queues))

        try:
            active = self._registry.active()
            hello = {
                "threads": [t.to_dict() for t in self._registry.list()],
                "active": active.id if active else None,
                "unread": self._registry.unread_counts(),
            }
            await response.write(f"event: connected\ndata: {json.dumps(hello)}\n\n".encode())
            while True:
                try:
                    msg = await asyncio.wait_for(queue.get(), timeout=30.0)
                    data = json.dumps(msg["data"], default=str)
                    await response.write(f"event: {msg['event']}\ndata: {data}\n\n".encode())
                except asyncio.TimeoutError:
                    await response.write(b": keepalive\n\n")
                except ConnectionResetError:
                    break
        except asyncio.CancelledError:
            pass
        finally:
            self._sse_queues.remove(queue)
            logger.info("SSE client disconnected req=%s active_clients=%d", request.get("req_id", "unknown"), len(self._sse_queues))
        return response

    async def _handle_list_threads(self, request: web.Request) -> web.Response:
        include_archived = request.query.get("archived", "1") not in {"0", "false", "no"}
        threads = [
            t.to_dict() for t in self._registry.list()
            if include_archived or t.status != "archived"
        ]
        return web.json_response({"threads": threads})

    async def _handle_create_thread(self, request: web.Request) -> web.Response:
        body = await self._json_body(request)
        workspace = body.get("workspace_path") or self._default_workspace
        thread = await self._registry.create(str(workspace))
        return web.json_response(thread.to_dict(), status=201)

    async def _handle_get_thread(self, request: web.Request) -> web.Response:
        return web.json_response(self._registry.get(request.match_info["id"]).to_dict())

    async def _handle_rename_thread(self, request: web.Request) -> web.Response:
        thread_id = request.match_info["id"]
        body = await self._json_body(request)
        if "title" not in body:
            return web.json_response({"error": "title is required"}, status=400)
        await self._registry.rename(thread_id, str(body["title"] or ""))
        return web.json_response(self._registry.get(thread_id).to_dict())

    async def _handle_delete_thread(self, request: web.Request) -> web.Response:
        thread_id = request.match_info["id"]
        await self._registry.delete(thread_id)
        return web.json_response({"deleted": thread_id})

    async def _handle_switch(self, request: web.Request) -> web.Response:
        thread_id = request.match_info["id"]
        await self._registry.switch(thread_id)
        return web.json_response({"active": thread_id})

    async def _handle_get_messages(self, request: web.Request) -> web.Response:
        thread_id = request.match_info["id"]
        messages = self._registry.messages(thread_id)
        tools = self._registry.tool_activity(thread_id)
        return web.json_response({
            "thread_id": thread_id,
            "messages": [message_to_dict(m) for m in messages],
            "tool_activity": [tool_to_dict(r) for r in tools],
        })

    async def _handle_send(self, request: web.Request) -> web.Response:
        thread_id = request.match_info["id"]
        body = await self._json_body(request)
        text = body.get("text")
        if not isinstance(text, str) or not text.strip():
            return web.json_response({"error": "text is required"}, status=400)
        metadata = body.get("metadata")
        if metadata is not None and not isinstance(metadata, dict):
            return web.json_response({"error": "metadata must be an object"}, status=400)
        message = await self._registry.send(thread_id, text, metadata)
        return web.json_response(
            {
                "message": message_to_dict(message),
                "thread": self._registry.get(thread_id).to_dict(),
            },
            status=202,
        )

    async def _handle_archive(self, request: web.Request) -> web.Response:
        thread_id = request.match_info["id"]
        await self._registry.archive(thread_id)
        return web.json_response(self._registry.get(thread_id).to_dict())

    async def _handle_cancel(self, request: web.Request) -> web.Response:
        thread_id = request.match_info["id"]
        cancelled = await self._registry.cancel(thread_id)
        return web.json_response({"cancelled": cancelled})

    async def _handle_active(self, request: web.Request) -> web.Response:
        active = self._registry.active()
        return web.json_response({"active": active.to_dict() if active else None})

    async def _handle_unread(self, request: web.Request) -> web.Response:
        return web.json_response({"unread": self._registry.unread_counts()})

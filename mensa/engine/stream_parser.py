"""Parse worker stdout lines into typed worker events.

Understands two dialects on the same stream:

* the native line protocol: ``delta``, ``toolCall``, ``toolResult``,
  ``done`` and ``error`` records;
* Claude CLI ``stream-json`` output: ``assistant`` messages with text
  and ``tool_use`` blocks, ``user`` messages carrying ``tool_result``
  blocks, SDK-style ``tool_call``/``tool_result`` records, ``system``
  init records with the session id, and the per-turn ``result`` record.

Lines that are not JSON are treated as plain text output.
"""
from __future__ import annotations

import json
import logging
from typing import Any

from mensa.adapters.events import (
    Delta,
    Done,
    SessionInit,
    ToolCallEvent,
    ToolResultEvent,
    WorkerError,
    WorkerEvent,
)

logger = logging.getLogger(__name__)

UNKNOWN_TOOL = "unknown"


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        # Content block lists: join the text parts.
        parts = []
        for block in value:
            if isinstance(block, dict) and block.get("type") == "text":
                parts.append(str(block.get("text", "")))
            else:
                parts.append(json.dumps(block, indent=2))
        return "\n".join(parts)
    return json.dumps(value, indent=2)


class StreamParser:
    """Stateful parser for one worker's output stream.

    Tool results in Claude output only carry the tool-use id, so the
    parser remembers the name of every tool call until its result has
    been seen.
    """

    def __init__(self) -> None:
        self._tool_names: dict[str, str] = {}

    @property
    def pending_tools(self) -> dict[str, str]:
        return dict(self._tool_names)

    def parse_line(self, line: str) -> list[WorkerEvent]:
        if not line.strip():
            return []
        try:
            msg = json.loads(line)
        except ValueError:
            return [Delta(text=line + "\n")]
        if not isinstance(msg, dict):
            return [Delta(text=line + "\n")]
        return self.parse_message(msg)

    def parse_message(self, msg: dict[str, Any]) -> list[WorkerEvent]:
        msg_type = msg.get("type")
        handler = _HANDLERS.get(str(msg_type))
        if handler is None:
            logger.debug("Ignoring worker message of type %r", msg_type)
            return []
        return handler(self, msg)

    # ── native protocol ─────────────────────────────────────────────

    def _native_delta(self, msg: dict[str, Any]) -> list[WorkerEvent]:
        text = msg.get("text", msg.get("content"))
        if not text:
            return []
        return [Delta(text=str(text))]

    def _native_tool_call(self, msg: dict[str, Any]) -> list[WorkerEvent]:
        tool_id = str(msg.get("id") or "")
        name = msg.get("name") or UNKNOWN_TOOL
        if tool_id:
            self._tool_names[tool_id] = name
        return [ToolCallEvent(tool_id=tool_id, name=name, input=msg.get("input"))]

    def _native_tool_result(self, msg: dict[str, Any]) -> list[WorkerEvent]:
        tool_id = str(msg.get("id") or "")
        name = msg.get("name") or self._tool_names.get(tool_id, UNKNOWN_TOOL)
        self._tool_names.pop(tool_id, None)
        return [ToolResultEvent(
            tool_id=tool_id,
            name=name,
            result=_stringify(msg.get("result")),
            is_error=bool(msg.get("isError", msg.get("is_error", False))),
        )]

    def _done(self, msg: dict[str, Any]) -> list[WorkerEvent]:
        return [Done()]

    def _error(self, msg: dict[str, Any]) -> list[WorkerEvent]:
        message = msg.get("error") or msg.get("message") or "Agent error"
        return [WorkerError(message=_stringify(message))]

    # ── Claude stream-json ──────────────────────────────────────────

    def _assistant(self, msg: dict[str, Any]) -> list[WorkerEvent]:
        content = (msg.get("message") or {}).get("content", msg.get("content"))
        if isinstance(content, str):
            return [Delta(text=content)] if content else []
        if not isinstance(content, list):
            return []
        events: list[WorkerEvent] = []
        for block in content:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "text" and block.get("text"):
                events.append(Delta(text=block["text"]))
            elif block_type == "tool_use":
                name = block.get("name") or block.get("tool_name") or UNKNOWN_TOOL
                if name == UNKNOWN_TOOL:
                    logger.debug("Skipping tool_use block without a name")
                    continue
                tool_id = str(block.get("id") or "")
                if tool_id:
                    self._tool_names[tool_id] = name
                events.append(
                    ToolCallEvent(tool_id=tool_id, name=name, input=block.get("input"))
                )
        return events

    def _user(self, msg: dict[str, Any]) -> list[WorkerEvent]:
        content = (msg.get("message") or {}).get("content", msg.get("content"))
        if not isinstance(content, list):
            return []
        events: list[WorkerEvent] = []
        for block in content:
            if not isinstance(block, dict) or block.get("type") != "tool_result":
                continue
            tool_id = str(block.get("tool_use_id") or "")
            events.append(ToolResultEvent(
                tool_id=tool_id,
                name=self._tool_names.pop(tool_id, UNKNOWN_TOOL),
                result=_stringify(block.get("content")),
                is_error=bool(block.get("is_error", False)),
            ))
        return events

    def _sdk_tool_call(self, msg: dict[str, Any]) -> list[WorkerEvent]:
        name = msg.get("tool_name") or UNKNOWN_TOOL
        if name == UNKNOWN_TOOL:
            return []
        tool_id = str(msg.get("id") or "")
        if tool_id:
            self._tool_names[tool_id] = name
        return [ToolCallEvent(tool_id=tool_id, name=name, input=msg.get("input"))]

    def _sdk_tool_result(self, msg: dict[str, Any]) -> list[WorkerEvent]:
        tool_id = str(msg.get("tool_use_id") or msg.get("id") or "")
        name = msg.get("tool_name") or self._tool_names.get(tool_id, UNKNOWN_TOOL)
        self._tool_names.pop(tool_id, None)
        if msg.get("patch"):
            result = str(msg["patch"])
        elif msg.get("result") is not None:
            result = _stringify(msg["result"])
        else:
            result = _stringify(msg.get("content"))
        return [ToolResultEvent(
            tool_id=tool_id,
            name=name,
            result=result,
            is_error=bool(msg.get("is_error", False)),
        )]

    def _system(self, msg: dict[str, Any]) -> list[WorkerEvent]:
        if msg.get("subtype") != "init":
            return []
        data = msg.get("data") if isinstance(msg.get("data"), dict) else msg
        session_id = data.get("session_id") or msg.get("session_id")
        commands = data.get("slash_commands") or []
        if not session_id:
            return []
        return [SessionInit(
            session_id=str(session_id),
            slash_commands=[str(c) for c in commands if isinstance(c, str)],
        )]

    def _result(self, msg: dict[str, Any]) -> list[WorkerEvent]:
        events: list[WorkerEvent] = []
        subtype = str(msg.get("subtype") or "")
        if subtype.startswith("error") or msg.get("is_error"):
            events.append(WorkerError(message=_stringify(msg.get("result")) or "Query failed"))
        events.append(Done())
        return events


_HANDLERS = {
    "delta": StreamParser._native_delta,
    "toolCall": StreamParser._native_tool_call,
    "toolResult": StreamParser._native_tool_result,
    "done": StreamParser._done,
    "error": StreamParser._error,
    "assistant": StreamParser._assistant,
    "user": StreamParser._user,
    "tool_call": StreamParser._sdk_tool_call,
    "tool_result": StreamParser._sdk_tool_result,
    "system": StreamParser._system,
    "result": StreamParser._result,
}

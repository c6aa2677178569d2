"""Derive thread titles, list previews, and worker replay context.

Titles and previews are deterministic snippets of message text; no model
call is involved.
"""
from __future__ import annotations

from typing import Any, Iterable

from mensa.engine.models import DEFAULT_TITLE, MessageRole, ThreadMessage

TITLE_MAX_LENGTH = 40
PREVIEW_MAX_LENGTH = 80


def _first_line(text: str) -> str:
    for line in (text or "").splitlines():
        stripped = line.strip()
        if stripped:
            return stripped
    return ""


def _clip(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    return text[: max(0, max_len - 3)].rstrip() + "..."


def derive_title(content: str, max_len: int = TITLE_MAX_LENGTH) -> str:
    """Title from the first non-empty line of the first user message."""
    return _clip(_first_line(content), max_len) or DEFAULT_TITLE


def make_preview(content: str, max_len: int = PREVIEW_MAX_LENGTH) -> str:
    """Bounded single-line snippet for thread lists."""
    text = " ".join((content or "").split())
    return _clip(text, max_len)


def is_default_title(title: str | None) -> bool:
    if not title:
        return True
    return title.strip().lower() == DEFAULT_TITLE.lower()


def build_replay_context(messages: Iterable[ThreadMessage]) -> list[dict[str, Any]]:
    """Coalesce a message log into conversational turns for re-hydration.

    Consecutive assistant entries of one turn are merged into a single
    turn. Marker entries (those amending another entry) carry no content
    of their own and only flag the turn they refer to as interrupted.
    """
    turns: list[dict[str, Any]] = []
    turn_index: dict[str, int] = {}
    seq_to_turn: dict[int, int] = {}

    for msg in messages:
        if msg.amends is not None:
            idx = seq_to_turn.get(msg.amends)
            if idx is not None and msg.interrupted:
                turns[idx]["interrupted"] = True
            continue

        key = f"{msg.role.value}:{msg.turn_id}" if msg.turn_id else None
        if (
            key is not None
            and msg.role == MessageRole.ASSISTANT
            and key in turn_index
            and turn_index[key] == len(turns) - 1
        ):
            idx = turn_index[key]
            turns[idx]["content"] += msg.content
        else:
            turns.append({"role": msg.role.value, "content": msg.content})
            idx = len(turns) - 1
            if key is not None:
                turn_index[key] = idx
        seq_to_turn[msg.seq] = idx

    return turns

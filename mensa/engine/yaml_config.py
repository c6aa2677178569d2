"""YAML configuration loader.

Values in the file override the env-derived configuration. Sections
and keys that are absent keep their current value.

Example YAML:
    storage:
      data_dir: ~/.mensa

    worker:
      command: claude -p --input-format stream-json --output-format stream-json --verbose
      permission_mode: acceptEdits
      max_turns: 25
      env:
        CLAUDE_CODE_ENTRYPOINT: mensa

    threads:
      max_workers: 10
      idle_unbind_seconds: 900
      reclaim_on_pressure: true
      graceful_timeout_seconds: 10
      kill_timeout_seconds: 5
      title_max_length: 40
      preview_max_length: 80

    persistence:
      max_attempts: 3
      base_delay_seconds: 0.05
      max_delay_seconds: 1.0

    logging:
      level: INFO
"""
from __future__ import annotations

import dataclasses
import logging
import os
import shlex
from pathlib import Path
from typing import Any

import yaml

from .config import ThreadsConfig
from .models import PermissionMode

logger = logging.getLogger(__name__)

# Files searched, in order, when no explicit --config is given.
CONFIG_CANDIDATES = (
    Path(".mensa") / "mensa.yaml",
    Path("mensa.yaml"),
)


def _parse_permission_mode(value: str) -> str:
    """Normalize a permission mode string; unknown values fall back to default."""
    mapping = {
        "default": PermissionMode.DEFAULT,
        "acceptEdits": PermissionMode.ACCEPT_EDITS,
        "accept_edits": PermissionMode.ACCEPT_EDITS,
        "bypassPermissions": PermissionMode.BYPASS,
        "bypass": PermissionMode.BYPASS,
        "plan": PermissionMode.PLAN,
    }
    mode = mapping.get(str(value))
    if mode is None:
        logger.warning("Unknown permission_mode %r; using 'default'", value)
        mode = PermissionMode.DEFAULT
    return mode.value


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ValueError(f"'{name}' section must be a mapping, got {type(value).__name__}")
    return value


def find_config_file(cwd: str | Path | None = None) -> Path | None:
    """Return the first existing default config file under *cwd*."""
    root = Path(cwd) if cwd is not None else Path.cwd()
    for candidate in CONFIG_CANDIDATES:
        path = root / candidate
        if path.is_file():
            return path
    return None


def load_yaml_config(
    path: str | Path, base: ThreadsConfig | None = None,
) -> ThreadsConfig:
    """Load a YAML config file on top of *base* (env-derived by default)."""
    path = Path(path)
    logger.info(
        "load_yaml_config: loading config from %s (exists=%s)", path, path.exists()
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute(),
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise
    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")

    logger.info(
        "Parsed YAML config %s — sections: %s",
        path.name, ", ".join(sorted(raw)) if raw else "(empty)",
    )

    config = base if base is not None else ThreadsConfig.from_env()
    updates: dict[str, Any] = {}

    # ── Storage ────────────────────────────────────────────────
    storage = _section(raw, "storage")
    if "data_dir" in storage:
        updates["data_dir"] = os.path.expanduser(str(storage["data_dir"]))

    # ── Worker ─────────────────────────────────────────────────
    worker = _section(raw, "worker")
    if "command" in worker:
        command = worker["command"]
        updates["worker_command"] = (
            shlex.split(command) if isinstance(command, str)
            else [str(part) for part in command]
        )
    if "permission_mode" in worker:
        updates["permission_mode"] = _parse_permission_mode(worker["permission_mode"])
    if "max_turns" in worker:
        updates["max_turns"] = int(worker["max_turns"])
    if "env" in worker:
        updates["worker_env"] = {
            str(k): str(v) for k, v in (worker["env"] or {}).items()
        }

    # ── Threads ────────────────────────────────────────────────
    threads = _section(raw, "threads")
    for key in ("max_workers", "title_max_length", "preview_max_length",
                "event_queue_size"):
        if key in threads:
            updates[key] = int(threads[key])
    for key in ("idle_unbind_seconds", "idle_check_interval_seconds",
                "graceful_timeout_seconds", "kill_timeout_seconds"):
        if key in threads:
            updates[key] = float(threads[key])
    if "reclaim_on_pressure" in threads:
        updates["reclaim_on_pressure"] = bool(threads["reclaim_on_pressure"])

    # ── Persistence ────────────────────────────────────────────
    persistence = _section(raw, "persistence")
    if "max_attempts" in persistence:
        updates["persist_max_attempts"] = int(persistence["max_attempts"])
    if "base_delay_seconds" in persistence:
        updates["persist_base_delay_seconds"] = float(persistence["base_delay_seconds"])
    if "max_delay_seconds" in persistence:
        updates["persist_max_delay_seconds"] = float(persistence["max_delay_seconds"])

    # ── Logging ────────────────────────────────────────────────
    logging_raw = _section(raw, "logging")
    if "level" in logging_raw:
        updates["log_level"] = str(logging_raw["level"]).upper()

    if updates:
        logger.info(
            "load_yaml_config: overriding %s", ", ".join(sorted(updates)),
        )
    return dataclasses.replace(config, **updates)

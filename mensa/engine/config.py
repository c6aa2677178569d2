"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via MENSA_* env vars,
or via a YAML file (see yaml_config.py).
"""
from __future__ import annotations

import logging
import os
import shlex
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


# Optional async callback for state-change observation.
# Signature: async def callback(event: dict[str, Any]) -> None
EventCallback = Callable[[dict[str, Any]], Awaitable[None]]

DEFAULT_WORKER_COMMAND = (
    "claude -p --input-format stream-json "
    "--output-format stream-json --verbose"
)


async def fire_event(
    callback: EventCallback | None,
    event: dict[str, Any],
) -> None:
    """Fire an event callback if set, silently swallowing errors."""
    if callback is None:
        return
    try:
        await callback(event)
    except Exception:
        logger.debug("Event callback failed for %s", event.get("event"), exc_info=True)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


@dataclass
class ThreadsConfig:
    """Thread orchestrator configuration."""

    # Storage root; threads live under {data_dir}/threads.
    data_dir: str = str(Path.home() / ".mensa")

    # Worker process. The command is split with shlex; per-spawn flags
    # (--permission-mode, --max-turns, --resume) are appended.
    worker_command: list[str] = field(
        default_factory=lambda: shlex.split(DEFAULT_WORKER_COMMAND)
    )
    permission_mode: str = "acceptEdits"
    max_turns: int = 25
    # Extra environment for worker processes.
    worker_env: dict[str, str] = field(default_factory=dict)

    # Maximum concurrently bound worker processes. 0 disables the cap.
    max_workers: int = 10
    # Graceful unbind waits this long for the in-flight response.
    graceful_timeout_seconds: float = 10.0
    # After SIGTERM, wait this long before SIGKILL.
    kill_timeout_seconds: float = 5.0

    # Unbind workers whose thread has been quiet this long. <= 0 disables.
    idle_unbind_seconds: float = 900.0
    idle_check_interval_seconds: float = 30.0
    # When a bind is queued at the cap, reclaim the least recently used
    # quiet worker to make room.
    reclaim_on_pressure: bool = True

    # Persistence retry policy.
    persist_max_attempts: int = 3
    persist_base_delay_seconds: float = 0.05
    persist_max_delay_seconds: float = 1.0

    # Display snippets.
    title_max_length: int = 40
    preview_max_length: int = 80

    # Event fan-in queue size.
    event_queue_size: int = 5000

    # Logging
    log_level: str = "INFO"

    @property
    def worker_cap(self) -> int | None:
        """The effective worker cap, or None when unbounded."""
        return self.max_workers if self.max_workers > 0 else None

    @classmethod
    def from_env(cls) -> ThreadsConfig:
        """Load configuration from MENSA_* environment variables."""
        mensa_vars = {
            k: v for k, v in os.environ.items() if k.startswith("MENSA_")
        }
        if mensa_vars:
            logger.info(
                "ThreadsConfig.from_env: MENSA_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(mensa_vars.items())),
            )
        else:
            logger.debug("ThreadsConfig.from_env: no MENSA_* env vars set, using defaults")

        defaults = cls()
        worker_command_raw = os.getenv("MENSA_WORKER_COMMAND")
        config = cls(
            data_dir=os.getenv("MENSA_DATA_DIR", defaults.data_dir),
            worker_command=(
                shlex.split(worker_command_raw)
                if worker_command_raw
                else defaults.worker_command
            ),
            permission_mode=os.getenv(
                "MENSA_PERMISSION_MODE", defaults.permission_mode
            ),
            max_turns=int(os.getenv("MENSA_MAX_TURNS", str(defaults.max_turns))),
            max_workers=int(os.getenv(
                "MENSA_MAX_WORKERS", str(defaults.max_workers)
            )),
            graceful_timeout_seconds=float(os.getenv(
                "MENSA_GRACEFUL_TIMEOUT", str(defaults.graceful_timeout_seconds)
            )),
            kill_timeout_seconds=float(os.getenv(
                "MENSA_KILL_TIMEOUT", str(defaults.kill_timeout_seconds)
            )),
            idle_unbind_seconds=float(os.getenv(
                "MENSA_IDLE_UNBIND_SECONDS", str(defaults.idle_unbind_seconds)
            )),
            reclaim_on_pressure=_env_bool(
                "MENSA_RECLAIM_ON_PRESSURE", defaults.reclaim_on_pressure
            ),
            persist_max_attempts=int(os.getenv(
                "MENSA_PERSIST_MAX_ATTEMPTS", str(defaults.persist_max_attempts)
            )),
            log_level=os.getenv("MENSA_LOG_LEVEL", defaults.log_level),
        )
        logger.info(
            "ThreadsConfig.from_env: data_dir=%s max_workers=%d worker=%s log_level=%s",
            config.data_dir, config.max_workers,
            " ".join(config.worker_command), config.log_level,
        )
        return config

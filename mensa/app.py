"""mensa launcher — list persisted threads or run the HTTP+SSE server."""
from __future__ import annotations

import asyncio
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from mensa.engine.config import ThreadsConfig

logger = logging.getLogger(__name__)


def _configure_logging(config: ThreadsConfig) -> Path:
    """Rotating file log under the data dir plus stderr."""
    log_dir = Path(config.data_dir) / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "mensa.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def load_config(config_path: str | None, data_dir: str | None = None) -> ThreadsConfig:
    """Env config, overridden by an explicit or auto-discovered YAML file."""
    from mensa.engine.yaml_config import find_config_file, load_yaml_config

    config = ThreadsConfig.from_env()
    if config_path:
        explicit = Path(config_path)
        logger.info("Using explicit config path: %s (exists=%s)", explicit, explicit.exists())
        config = load_yaml_config(explicit, base=config)
    else:
        discovered = find_config_file()
        if discovered is not None:
            logger.info("Auto-discovered config: %s", discovered)
            config = load_yaml_config(discovered, base=config)
    if data_dir:
        config.data_dir = os.path.abspath(os.path.expanduser(data_dir))
    return config


def _print_threads(config: ThreadsConfig) -> None:
    from mensa.shared.services.persistence import ThreadPersistence

    persistence = ThreadPersistence(Path(config.data_dir))
    threads = persistence.load_all_metadata()
    active_id = persistence.load_active_thread_id()
    if not threads:
        print("No saved threads.")
    for thread in threads:
        marker = "*" if thread.id == active_id else " "
        print(
            f"{marker} {thread.id[:8]}  {thread.status.value:<8}  "
            f"{thread.title}  ({thread.workspace_path})"
        )
    for skipped in persistence.skipped_records:
        print(f"  ! skipped unreadable record {skipped.path}: {skipped.reason}", file=sys.stderr)


async def _serve(config: ThreadsConfig, host: str, port: int) -> None:
    from mensa.engine.registry import SessionRegistry
    from mensa.server.server import ThreadServer

    registry = SessionRegistry(config)
    server = ThreadServer(registry, host=host, port=port, default_workspace=str(Path.cwd()))
    await server.start()


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="mensa",
        description="mensa — multi-thread orchestrator for coding-agent worker processes",
    )
    parser.add_argument(
        "--list", action="store_true",
        help="List saved threads and exit",
    )
    parser.add_argument(
        "--server", action="store_true",
        help="Start HTTP+SSE server mode",
    )
    parser.add_argument(
        "--host", default="127.0.0.1",
        help="Server bind address (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port", type=int, default=0,
        help="Server port (0=random available port)",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (default: .mensa/mensa.yaml or mensa.yaml)",
    )
    parser.add_argument(
        "--data-dir", metavar="PATH",
        help="Directory holding thread data (default: ~/.mensa)",
    )
    args = parser.parse_args()

    config = load_config(args.config, args.data_dir)

    if args.list:
        _print_threads(config)
        sys.exit(0)

    if args.server:
        from mensa.shared.services.process_cleanup import cleanup_stale_workers

        log_file = _configure_logging(config)
        logger.info(
            "Starting mensa server cwd=%s host=%s port=%s config=%s data_dir=%s log=%s",
            Path.cwd(), args.host, args.port, args.config or "<auto>",
            config.data_dir, log_file,
        )
        try:
            reaped = cleanup_stale_workers(
                config.worker_command, config.data_dir, log=logger.info,
            )
            if reaped:
                logger.warning("Reaped %d stale worker process(es) at startup", reaped)
        except Exception:
            logger.exception("Startup stale-process cleanup failed")
        try:
            asyncio.run(_serve(config, args.host, args.port))
        except KeyboardInterrupt:
            pass
        return

    parser.print_help()


if __name__ == "__main__":
    main()

"""swarmsync - main application entry point."""

from __future__ import annotations

import asyncio
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


def _configure_server_logging(log_level: str) -> Path:
    """Route logs to a rotating file under ~/.swarmsync/logs and stderr."""
    log_dir = Path.home() / ".swarmsync" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "swarmsync-server.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))
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


def _resolve_config_path(explicit: str | None) -> Path | None:
    """Explicit --config, else ./.swarmsync/swarmsync.yaml, else ./swarmsync.yaml."""
    logger = logging.getLogger(__name__)
    if explicit:
        path = Path(explicit)
        logger.info("Using explicit config path: %s (exists=%s)", path, path.exists())
        return path
    for candidate in (Path.cwd() / ".swarmsync" / "swarmsync.yaml", Path.cwd() / "swarmsync.yaml"):
        if candidate.exists():
            logger.info("Auto-discovered config: %s", candidate)
            return candidate
    logger.info("No config file found; using defaults")
    return None


def build_config(args):
    """Env defaults, then the YAML file, then CLI flags."""
    from swarmsync.engine.config import SyncConfig
    from swarmsync.engine.yaml_config import load_yaml_config

    config = SyncConfig.from_env()
    config_path = _resolve_config_path(args.config)
    if config_path is not None:
        config = load_yaml_config(config_path, base=config)
    if args.lines is not None:
        config.output_lines = args.lines
    if args.debounce is not None:
        config.output_debounce_seconds = args.debounce / 1000.0
    return config


def _print_session_table(sessions: list[dict]) -> None:
    from rich.console import Console
    from rich.table import Table

    console = Console()
    if not sessions:
        console.print("No managed sessions.")
        return
    table = Table(title="Agent sessions")
    table.add_column("Session", style="bold")
    table.add_column("Agent")
    table.add_column("State")
    table.add_column("Task")
    table.add_column("Attached", justify="center")
    for s in sessions:
        task = s.get("task") or {}
        task_label = f"{task.get('id')}  {task.get('title') or ''}".strip() if task else "-"
        table.add_row(
            s["sessionName"],
            s["agentName"],
            s.get("state") or "-",
            task_label,
            "yes" if s.get("attached") else "no",
        )
    console.print(table)


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="swarmsync",
        description="swarmsync - real-time sync of agent terminal sessions to remote viewers",
    )
    parser.add_argument(
        "--list", action="store_true",
        help="List managed sessions with their resolved state and exit",
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
        help="YAML config file (sync, ttl, markers sections)",
    )
    parser.add_argument(
        "--lines", type=int, metavar="N",
        help="Terminal lines captured per session",
    )
    parser.add_argument(
        "--debounce", type=int, metavar="MS",
        help="Output broadcast debounce in milliseconds",
    )
    args = parser.parse_args()

    from swarmsync.engine.sync import build_engine

    if args.list:
        logging.basicConfig(level=logging.WARNING)
        config = build_config(args)
        engine = build_engine(config, watch=False)
        try:
            sessions = asyncio.run(engine.inspect())
        except Exception as exc:
            print(f"Error: {exc}", file=sys.stderr)
            sys.exit(1)
        _print_session_table(sessions)
        sys.exit(0)

    from swarmsync.server.server import SyncServer

    config = build_config(args)
    log_file = _configure_server_logging(config.log_level)
    logging.getLogger(__name__).info(
        "Starting swarmsync server cwd=%s host=%s port=%s log=%s",
        Path.cwd(), args.host, args.port, log_file,
    )
    server = SyncServer(build_engine(config), host=args.host, port=args.port)
    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        logging.getLogger(__name__).info("Interrupted, shutting down")
    sys.exit(0)


if __name__ == "__main__":
    main()

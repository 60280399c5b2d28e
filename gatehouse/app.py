"""gatehouse main application entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import shutil
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


def configure_logging(level_name: str | None = None) -> Path:
    """Rotating file log under ~/.gatehouse/logs plus stderr.

    Returns the log file path.
    """
    log_level = (level_name or os.getenv("GATEHOUSE_LOG_LEVEL", "INFO")).upper()
    log_dir = Path.home() / ".gatehouse" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "gatehouse-server.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level, logging.INFO))
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
    # aiohttp logs every request at INFO; ours already does.
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    return log_file


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gatehouse",
        description="gatehouse session bridge with permission-gated tool execution",
    )
    parser.add_argument(
        "--host", default=None,
        help="Interface to bind (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port", type=int, default=None,
        help="Server port (0=random available port, default: 3001)",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (server, agent, permissions, streams)",
    )
    parser.add_argument(
        "--agent-command", metavar="CMD",
        help="Agent executable (default: claude)",
    )
    parser.add_argument(
        "--permission-timeout", type=float, metavar="SECONDS",
        help="Seconds to wait for a human decision before denying",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Enable debug logging",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    from gatehouse.engine.config import GatehouseConfig
    from gatehouse.engine.yaml_config import load_yaml_config
    from gatehouse.web.server import GatehouseServer

    args = build_parser().parse_args(argv)

    log_file = configure_logging("DEBUG" if args.verbose else None)
    logger = logging.getLogger(__name__)

    config = GatehouseConfig.from_env()
    if args.config:
        config = load_yaml_config(args.config, base=config)
    if args.host is not None:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    if args.agent_command:
        config.agent_command = args.agent_command
    if args.permission_timeout is not None:
        config.permission_timeout_seconds = args.permission_timeout
    if not args.verbose and config.log_level.upper() != logging.getLevelName(logging.getLogger().level):
        logging.getLogger().setLevel(getattr(logging, config.log_level.upper(), logging.INFO))

    logger.info(
        "Starting gatehouse cwd=%s host=%s port=%s config=%s log=%s",
        Path.cwd(), config.host, config.port, args.config or "<none>", log_file,
    )
    if shutil.which(config.agent_command) is None:
        logger.warning(
            "Agent command '%s' is not on PATH; session starts will fail",
            config.agent_command,
        )

    server = GatehouseServer(config)
    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()

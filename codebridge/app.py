"""codebridge CLI: main application entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import shutil
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from codebridge.engine.config import BridgeConfig, load_yaml_config


def _configure_logging(level_name: str, verbose: bool = False) -> Path:
    """Rotating file log under ~/.codebridge/logs plus stderr."""
    log_level = "DEBUG" if verbose else level_name.upper()
    log_dir = Path.home() / ".codebridge" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "codebridge.log"

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
    # aiohttp's access log duplicates the request middleware.
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    return log_file


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="codebridge",
        description="Local execution and synchronization bridge for agent CLIs",
    )
    parser.add_argument(
        "--host",
        help="Interface to bind (default: BRIDGE_HOST or 127.0.0.1)",
    )
    parser.add_argument(
        "--port", type=int,
        help="Port to listen on, 0 for any free port (default: BRIDGE_PORT or 3001)",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file; its 'bridge:' section overrides the environment",
    )
    parser.add_argument(
        "--workspace-root", metavar="DIR",
        help="Directory holding ephemeral per-project working directories",
    )
    parser.add_argument(
        "--store-root", metavar="DIR",
        help="Directory backing the filesystem project store",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Log at DEBUG level",
    )
    return parser


def load_config(args: argparse.Namespace) -> BridgeConfig:
    """Environment, then the YAML file, then command-line flags."""
    config = BridgeConfig.from_env()
    if args.config:
        config = load_yaml_config(args.config, base=config)
    overrides = {
        "host": args.host,
        "port": args.port,
        "workspace_root": args.workspace_root,
        "store_root": args.store_root,
    }
    config.apply_overrides({k: v for k, v in overrides.items() if v is not None})
    return config


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args)
    except (OSError, ValueError) as exc:
        parser.error(f"could not load configuration: {exc}")

    log_file = _configure_logging(config.log_level, verbose=args.verbose)
    logger = logging.getLogger(__name__)
    logger.info(
        "Starting codebridge host=%s port=%s workspace=%s store=%s config=%s log=%s",
        config.host, config.port, config.workspace_root, config.store_root,
        args.config or "<none>", log_file,
    )
    if shutil.which(config.agent_cli_path) is None:
        logger.warning(
            "Agent CLI %r not found on PATH; executions will fail with SPAWN_FAILED",
            config.agent_cli_path,
        )

    from codebridge.server.server import BridgeServer

    server = BridgeServer(config)
    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()

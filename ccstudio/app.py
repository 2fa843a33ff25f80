"""ccstudio server entry point for the desktop frontend."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

logger = logging.getLogger(__name__)


def _log_runtime_versions() -> None:
    """Log the installed SDK and server versions."""
    versions: dict[str, str] = {}
    for dist in ("claude-agent-sdk", "aiohttp"):
        try:
            from importlib.metadata import version

            versions[dist] = version(dist)
        except Exception:
            logger.debug("Could not resolve %s version", dist, exc_info=True)
            versions[dist] = "unknown"
    logger.info(
        "Runtime versions: %s",
        " ".join(f"{k}={v}" for k, v in versions.items()),
    )


def _configure_logging(level_name: str) -> Path:
    log_dir = Path.home() / ".ccstudio" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "ccstudio-server.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name.upper(), logging.INFO))
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


def _load_config(config_path: str | None):
    from ccstudio.engine.config import EngineConfig
    from ccstudio.engine.yaml_config import find_config, load_yaml_config

    if config_path:
        logger.info("Using explicit config path: %s", config_path)
        return load_yaml_config(config_path)
    discovered = find_config(Path.cwd())
    if discovered is not None:
        logger.info("Auto-discovered config: %s", discovered)
        return load_yaml_config(discovered)
    logger.info("No config file found; using environment and defaults")
    return EngineConfig.from_env()


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="ccstudio",
        description="ccstudio session server for Claude Code desktop frontends",
    )
    parser.add_argument(
        "--host", default="127.0.0.1",
        help="Interface to bind (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port", type=int, default=0,
        help="Server port (0=random available port)",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (default: .ccstudio/ccstudio.yaml if present)",
    )
    parser.add_argument(
        "--check", action="store_true",
        help="Print Claude backend availability as JSON and exit",
    )
    args = parser.parse_args()

    log_file = _configure_logging(os.getenv("CCSTUDIO_LOG_LEVEL", "INFO"))
    config = _load_config(args.config)
    logging.getLogger().setLevel(getattr(logging, config.log_level.upper(), logging.INFO))

    from ccstudio.engine.providers.claude_provider import ClaudeBackend

    if args.check:
        status = asyncio.run(ClaudeBackend(config).check())
        print(json.dumps(status.to_dict()))
        sys.exit(0 if status.available else 1)

    from ccstudio.ipc.server import StudioServer

    logger.info(
        "Starting ccstudio server cwd=%s host=%s port=%s config=%s log=%s",
        Path.cwd(), args.host, args.port, args.config or "<auto>", log_file,
    )
    _log_runtime_versions()
    server = StudioServer(host=args.host, port=args.port, config=config)
    asyncio.run(server.start())
    sys.exit(0)


if __name__ == "__main__":
    main()

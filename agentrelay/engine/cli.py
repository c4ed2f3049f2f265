"""CLI entry point for the session relay.

Usage:
    agentrelay                              # exec backend, prompts on stdin
    agentrelay --backend server --model anthropic/claude-3-5-sonnet-20241022
    agentrelay --config relay.yaml --permission-mode safe-yolo
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from agentrelay.adapters.transport import ConsoleTransport

from .backends.registry import backend_names, build_backend
from .config import RelayConfig
from .errors import BackendUnavailableError, ConfigError
from .models import Mode, PermissionMode
from .orchestrator import SessionOrchestrator

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"


def _configure_logging(level: int, log_file: str | None) -> None:
    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
    formatter = logging.Formatter(LOG_FORMAT)
    # stdout carries the JSON transport; logs go to stderr
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agentrelay",
        description="Drive a coding-agent backend from a remote session",
    )
    parser.add_argument(
        "--backend",
        choices=backend_names(),
        default=None,
        help="Backend to drive (default: RELAY_BACKEND or exec)",
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="YAML config file layered over RELAY_* environment settings",
    )
    parser.add_argument(
        "--cwd",
        default=None,
        help="Working directory for the backend (default: current dir)",
    )
    parser.add_argument(
        "--model",
        default=None,
        help="Model for this run (default: from config)",
    )
    parser.add_argument(
        "--permission-mode",
        choices=[m.value for m in PermissionMode],
        default=PermissionMode.DEFAULT.value,
        help="Initial permission mode (default: default)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Also write logs to a rotating file",
    )
    return parser


def load_config(args: argparse.Namespace) -> RelayConfig:
    """Environment settings, then the YAML file, then command-line flags."""
    config = RelayConfig.from_env()
    if args.config:
        from .yaml_config import load_yaml_config
        config = load_yaml_config(args.config, base=config)
    if args.backend is not None:
        config.backend = args.backend
    if args.cwd is not None:
        config.cwd = args.cwd
    return config


async def run_relay(
    config: RelayConfig,
    *,
    model: str | None = None,
    permission_mode: PermissionMode = PermissionMode.DEFAULT,
    transport: ConsoleTransport | None = None,
) -> None:
    """Run one console session until stdin closes or /quit."""
    backend = build_backend(config, permission_mode=permission_mode)
    if not await backend.is_available():
        raise BackendUnavailableError(
            backend.name, f"'{backend.command}' is not installed or not reachable",
        )
    version = await backend.get_version()
    logger.info("Using %s backend (%s)", backend.name, version or "unknown version")

    transport = transport or ConsoleTransport()
    orchestrator = SessionOrchestrator(
        backend,
        transport,
        config,
        initial_mode=Mode(permission_mode=permission_mode, model=model),
    )
    loop_task = asyncio.create_task(orchestrator.run())
    try:
        await transport.serve(orchestrator)
    finally:
        await orchestrator.shutdown()
        await loop_task
        await transport.close()


def main() -> None:
    args = build_parser().parse_args()

    try:
        config = load_config(args)
    except (ConfigError, FileNotFoundError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(2)

    level = logging.DEBUG if args.verbose else getattr(
        logging, config.log_level.upper(), logging.INFO,
    )
    _configure_logging(level, args.log_file)

    try:
        asyncio.run(
            run_relay(
                config,
                model=args.model,
                permission_mode=PermissionMode(args.permission_mode),
            )
        )
    except BackendUnavailableError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(130)


if __name__ == "__main__":
    main()

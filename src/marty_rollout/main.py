"""CLI entrypoint for the rollout service."""

from __future__ import annotations

import argparse
import json
from collections.abc import Iterable
from pathlib import Path

import structlog
import uvicorn

from marty_rollout import __version__
from marty_rollout.api import create_app
from marty_rollout.config import AppSettings
from marty_rollout.deployment import DeploymentError, StrategyCatalog
from marty_rollout.observability import configure_logging


def cli(argv: Iterable[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    settings = AppSettings()
    configure_logging(settings.service_name, settings.log_level, json_logs=not args.console_logs)

    if args.command == "health":
        print("ok")
        return 0

    if args.command == "strategies":
        return _print_strategies(args.file or settings.strategies_file)

    logger = structlog.get_logger(__name__)
    host = args.host or settings.host
    port = args.port or settings.port
    logger.info(
        "service.starting",
        version=__version__,
        environment=settings.environment,
        bind=f"{host}:{port}",
    )
    uvicorn.run(create_app(settings), host=host, port=port, log_config=None)
    return 0


def _print_strategies(path: str | Path | None) -> int:
    try:
        catalog = StrategyCatalog.from_yaml(path) if path else StrategyCatalog.default()
    except (DeploymentError, OSError) as exc:
        print(f"invalid strategy catalog: {exc}")
        return 1
    print(json.dumps([strategy.to_dict() for strategy in catalog], indent=2))
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Marty Rollout CLI")
    parser.add_argument(
        "--console-logs", action="store_true", help="Human-readable logs instead of JSON"
    )
    subparsers = parser.add_subparsers(dest="command")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP command API")
    serve_parser.set_defaults(command="serve")
    serve_parser.add_argument("--host", default=None, help="Bind host (overrides ROLLOUT_HOST)")
    serve_parser.add_argument("--port", type=int, default=None, help="Bind port (overrides ROLLOUT_PORT)")

    strategies_parser = subparsers.add_parser(
        "strategies", help="Validate and print the strategy catalog"
    )
    strategies_parser.set_defaults(command="strategies")
    strategies_parser.add_argument("--file", default=None, help="YAML catalog to validate")

    health_parser = subparsers.add_parser("health", help="Quick CLI health probe")
    health_parser.set_defaults(command="health")

    parser.set_defaults(command="serve", host=None, port=None, file=None)
    return parser


if __name__ == "__main__":
    raise SystemExit(cli())

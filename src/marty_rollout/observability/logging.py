"""Structured logging configuration."""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog


def configure_logging(service_name: str, log_level: str, *, json_logs: bool = True) -> None:
    """Configure stdlib logging + structlog for the rollout service.

    Every record carries the service name; records emitted while a rollout task
    runs also carry ``deployment_id`` and ``application`` (see
    :func:`bind_deployment`).
    """

    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", key="timestamp"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _add_service_name(service_name),
            structlog.processors.EventRenamer("message"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(log_level)
        ),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=logging.getLevelName(log_level),
        force=True,
    )


def bind_deployment(deployment_id: str, application: str) -> None:
    """Attach rollout identity to every log line of the current task."""
    structlog.contextvars.bind_contextvars(deployment_id=deployment_id, application=application)


def _add_service_name(service_name: str) -> structlog.types.Processor:
    def processor(logger: Any, name: str, event: Any) -> Any:
        if isinstance(event, dict):
            event.setdefault("service", service_name)
        return event

    return processor

"""
structlog configuration for the pipeline processes.

Usage:
    from utils.logging import configure_logging
    configure_logging(debug=settings.debug, json_format=settings.log_json)

Modules keep using ``logger = structlog.get_logger()``; worker slots bind
``queue`` and ``job_key`` as context vars, which merge_contextvars adds to
every event logged while a job runs.
"""
from __future__ import annotations

import logging
import sys
from typing import Any

import structlog


def _make_service_processor(service_name: str):
    def processor(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        event_dict.setdefault("service", service_name)
        return event_dict

    return processor


def configure_logging(
    service_name: str = "outreach_pipeline",
    debug: bool = False,
    json_format: bool = True,
) -> None:
    """
    JSON lines in production, coloured console output in development.
    """
    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    # Suppress noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if debug else logging.WARNING)

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        _make_service_processor(service_name),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True, sort_keys=True))

    structlog.configure(
        processors=processors,
        logger_factory=structlog.PrintLoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=False,
    )

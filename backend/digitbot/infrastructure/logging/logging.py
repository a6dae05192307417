"""Logging setup using structlog.

Every bot decision (proposal, buy, settlement, stop) is emitted as one
structured event so a run can be audited from the log stream alone.
Run-wide fields (market, contract type) are carried through contextvars.
"""

from __future__ import annotations

import logging
import sys
from typing import Any, List

import structlog


def configure_logging(log_level: str = "INFO", *, json_logs: bool = True) -> None:
    level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )
    # websockets logs every frame at DEBUG; keep it out of the bot stream
    logging.getLogger("websockets").setLevel(max(level, logging.INFO))

    renderer: Any = (
        structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer(colors=False)
    )
    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        renderer,
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(component: str, **kwargs: Any) -> structlog.BoundLogger:
    return structlog.get_logger().bind(component=component, **kwargs)


def bind_run_context(**fields: Any) -> None:
    """Attach fields to every log line emitted until clear_run_context()."""
    structlog.contextvars.bind_contextvars(**fields)


def clear_run_context() -> None:
    structlog.contextvars.clear_contextvars()

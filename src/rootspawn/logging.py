"""Logging configuration."""
import datetime
import json
import logging
import sys
from typing import Any, List

import structlog
from structlog.types import EventDict, Processor

DEFAULT_LOG_LEVEL = "WARNING"
IGNORED_LOGGERS = [
    "asyncio",
]


def add_timestamp(_, __, event_dict: EventDict) -> EventDict:
    """Add ISO timestamp to the event dict."""
    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.datetime.now(datetime.timezone.utc).isoformat()
    return event_dict


def drop_ignored(logger: Any, name: str, event_dict: EventDict) -> EventDict:
    """Drop events coming from noisy third-party loggers."""
    logger_name = getattr(logger, "name", "") or ""
    if any(ignored in logger_name for ignored in IGNORED_LOGGERS):
        raise structlog.DropEvent
    return event_dict


class CompactJSONRenderer:
    """Single-line JSON renderer with minimal output."""

    def __call__(self, _: Any, __: str, event_dict: EventDict) -> str:
        items = {
            "ts": event_dict.pop("timestamp", None),
            "lvl": event_dict.pop("level", "???"),
            "msg": event_dict.pop("event", ""),
        }
        if other := {k: v for k, v in event_dict.items() if k != "logger"}:
            items["data"] = other
        return json.dumps(items, separators=(",", ":"), default=str)


def configure_logging(level: str = DEFAULT_LOG_LEVEL) -> None:
    """Configure structured logging for the application.

    Everything goes to STDERR so that STDOUT stays free for the spawned
    command and for dry-run output:
    - TTY: colored console output
    - otherwise: compact single-line JSON
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, level.upper()),
        force=True,
    )

    shared: List[Processor] = [
        structlog.stdlib.filter_by_level,
        drop_ignored,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
    ]

    console_processors: List[Processor] = shared + [
        structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.dev.ConsoleRenderer(colors=True),
    ]

    json_processors: List[Processor] = shared + [
        add_timestamp,
        structlog.processors.format_exc_info,
        CompactJSONRenderer(),
    ]

    structlog.configure(
        processors=console_processors if sys.stderr.isatty() else json_processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)

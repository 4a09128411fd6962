"""
structlog setup. Events go to stderr, leaving stdout to the CLI's JSON report.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from linkscan.core.config import Settings

NOISY_LOGGERS = ("asyncio", "httpx", "httpcore", "playwright")
SECRET_KEYS = frozenset({"api_key", "apiKey", "password", "pass", "authorization"})


def add_severity(logger: Any, method: str, event_dict: EventDict) -> EventDict:
    event_dict["severity"] = "WARNING" if method == "warn" else method.upper()
    return event_dict


def redact_secrets(logger: Any, method: str, event_dict: EventDict) -> EventDict:
    """Cooperation credentials must never reach a log line."""
    for key in SECRET_KEYS.intersection(event_dict):
        event_dict[key] = "***"
    return event_dict


def _processors(settings: Settings) -> list[Processor]:
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        add_severity,
        redact_secrets,
    ]
    if settings.LOG_FORMAT == "json":
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))
    return processors


def configure_logging(settings: Settings) -> None:
    log_level = getattr(logging, settings.effective_log_level, logging.INFO)

    structlog.configure(
        processors=_processors(settings),
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=log_level)

    if not settings.VERBOSE:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

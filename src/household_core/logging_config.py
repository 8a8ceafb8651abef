"""Structured logging for Household Core, built on structlog.

Events are snake_case names with household, user and invite ids as fields.
Development runs render them as colored console lines, production as one
JSON object per line. Request-scoped values (request id, path, method) and
household-scoped values are bound through contextvars and merged into every
event logged while they are bound.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import UUID

import structlog
from structlog.types import EventDict, Processor

from household_core.config import Settings, get_settings

# Libraries that log every request or connection at INFO and below.
NOISY_LOGGERS = ("httpcore", "httpx", "uvicorn.access", "asyncio")


def _plain_values(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Render ids and enum members (roles, plans, statuses) as plain strings."""
    for key, value in event_dict.items():
        if isinstance(value, UUID):
            event_dict[key] = str(value)
        elif isinstance(value, Enum):
            event_dict[key] = value.value
    return event_dict


def _add_service_fields(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Tag JSON events with the level, app name and deployment environment."""
    settings = get_settings()
    event_dict["level"] = "warning" if method_name == "warn" else method_name
    event_dict["app"] = settings.app_name
    event_dict["environment"] = settings.environment.value
    return event_dict


def _shared_processors() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        _plain_values,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]


def get_console_processors() -> list[Processor]:
    return [
        *_shared_processors(),
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="%H:%M:%S", utc=False),
        structlog.dev.ConsoleRenderer(
            colors=sys.stdout.isatty(),
            exception_formatter=structlog.dev.plain_traceback,
        ),
    ]


def get_json_processors() -> list[Processor]:
    return [
        *_shared_processors(),
        _add_service_fields,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ]


def configure_logging(settings: Settings | None = None) -> None:
    """Route structlog through stdlib logging at the configured level.

    Called once by the API app factory at startup.
    """
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level.value)
    processors = (
        get_json_processors() if settings.log_format == "json" else get_console_processors()
    )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    if settings.log_file:
        _add_file_handler(settings.log_file, level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.INFO))


def _add_file_handler(log_file: Path, level: int) -> None:
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_file)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(asctime)s %(name)s %(levelname)s %(message)s"))
    logging.getLogger().addHandler(handler)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Example:
    logger = get_logger(__name__)
    logger.info("member_joined", household_id=str(household.id))
    """
    return structlog.stdlib.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind request-scoped values until clear_context() is called."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


@contextmanager
def household_context(household_id: UUID, **values: Any) -> Iterator[None]:
    """Tag every event logged inside the block with the household id.

    Values bound before the block (request id, path) are kept, and any key
    the block rebinds is restored on exit.
    """
    with structlog.contextvars.bound_contextvars(household_id=household_id, **values):
        yield

"""structlog setup shared by the CLI, the API server and scheduled batches.

Every log line emitted while a re-classification batch runs carries that
batch's batch_id, bound through a ContextVar so concurrent candidate tasks
inherit it. Long string values (note bodies, raw model output) are cut
before rendering.

Usage:
    from notetriage.core.logging import batch_scope, get_logger

    logger = get_logger(__name__)

    with batch_scope(str(uuid.uuid4())):
        logger.info("candidate_classified", note_id="n-1", status="pending")
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from notetriage.config_schema import LoggingConfig

MAX_VALUE_LENGTH = 500

# Chatty at INFO; only shown when debugging
_NOISY_LOGGERS = ("httpx", "httpcore", "apscheduler", "aiosqlite", "uvicorn.access")

_batch_id: ContextVar[str | None] = ContextVar("batch_id", default=None)


@contextmanager
def batch_scope(batch_id: str) -> Iterator[str]:
    """Tag every log line emitted inside the block with batch_id."""
    token = _batch_id.set(batch_id)
    try:
        yield batch_id
    finally:
        _batch_id.reset(token)


def current_batch_id() -> str | None:
    return _batch_id.get()


def _add_batch_id(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    batch_id = _batch_id.get()
    if batch_id is not None:
        event_dict.setdefault("batch_id", batch_id)
    return event_dict


def _truncate_long_values(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    for key, value in event_dict.items():
        if key != "event" and isinstance(value, str) and len(value) > MAX_VALUE_LENGTH:
            event_dict[key] = f"{value[:MAX_VALUE_LENGTH]}... ({len(value)} chars)"
    return event_dict


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        json_output: JSON lines (server) or coloured console output (CLI)
    """
    level = getattr(logging, log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level, force=True)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(level if level <= logging.DEBUG else logging.WARNING)

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_batch_id,
        _truncate_long_values,
    ]
    if json_output:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def configure_logging_from_config(config: "LoggingConfig", debug: bool = False) -> None:
    """Apply the logging section of config.yaml; debug forces DEBUG level."""
    configure_logging("DEBUG" if debug else config.level, config.json_output)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)

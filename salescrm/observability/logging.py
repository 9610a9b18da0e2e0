from __future__ import annotations

import logging
import sys

import structlog

from .context import get_mutation_id


def _add_mutation_id(_: logging.Logger, __: str, event_dict: dict) -> dict:
    mid = get_mutation_id()
    if mid:
        event_dict["mutation_id"] = mid
    return event_dict


_CONFIGURED = False


def configure_logging(*, level: str | int = "INFO") -> None:
    """
    Configure stdlib logging + structlog to output structured JSON to stdout.
    """
    global _CONFIGURED
    if _CONFIGURED:
        return

    pre_chain = [
        _add_mutation_id,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.processors.JSONRenderer(),
        foreign_pre_chain=pre_chain,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    # httpx logs every request at INFO; keep it out of the board's log stream.
    logging.getLogger("httpx").setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            _add_mutation_id,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _CONFIGURED = True


def get_logger(name: str | None = None):
    return structlog.get_logger(name)

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING, cast

import structlog

if TYPE_CHECKING:
    from billing_lifecycle.core.config import EngineConfig


def configure_logging(level: str = "INFO", json: bool = True) -> None:
    """Route structlog through stdlib logging for the billing engine.

    ``json=True`` renders one JSON object per line for log shipping;
    ``json=False`` uses the coloured console renderer for local runs.
    Records from stdlib loggers (the persistence retry policy, httpx) pass
    through the same formatter.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    renderer: structlog.types.Processor
    if json:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[*shared_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
            foreign_pre_chain=shared_processors,
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)


def configure_from_config(config: EngineConfig) -> None:
    configure_logging(level=config.log_level, json=config.log_json)


def get_logger(name: str) -> structlog.BoundLogger:
    """Return a structlog logger bound to *name* (normally ``__name__``)."""
    return cast(structlog.BoundLogger, structlog.get_logger(name))

"""Structured logging setup.

Uses structlog over the standard library, with JSON or console rendering.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import Processor

from moonwatch.config import LogFormat, get_settings


def setup_logging() -> None:
    """Configure the structured logging system.

    Level and output format come from settings.
    """
    settings = get_settings()

    log_level = getattr(logging, settings.log_level)
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.log_format == LogFormat.JSON:
        processors: list[Processor] = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            *shared_processors,
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structured logger.

    Args:
        name: Logger name. Defaults to the calling module when None.

    Returns:
        Bound structured logger.
    """
    return structlog.get_logger(name)


def log_dispatch(
    logger: structlog.stdlib.BoundLogger,
    *,
    token_address: str,
    in_flight: int,
    pending: int,
    **kwargs: Any,
) -> None:
    """Log a token leaving the admission queue."""
    logger.info(
        "dispatch",
        token_address=token_address,
        in_flight=in_flight,
        pending=pending,
        **kwargs,
    )


def log_order_execution(
    logger: structlog.stdlib.BoundLogger,
    *,
    token_address: str,
    side: str,
    size: float,
    price: float | None = None,
    signature: str | None = None,
    status: str = "submitted",
    **kwargs: Any,
) -> None:
    """Log an order outcome."""
    level = "info" if status == "filled" else "warning"
    getattr(logger, level)(
        "order_execution",
        token_address=token_address,
        side=side,
        size=size,
        price=price,
        signature=signature,
        status=status,
        **kwargs,
    )


def log_risk_event(
    logger: structlog.stdlib.BoundLogger,
    *,
    event_type: str,
    action: str,
    **kwargs: Any,
) -> None:
    """Log a risk control event."""
    logger.warning(
        "risk_event",
        event_type=event_type,
        action=action,
        **kwargs,
    )

"""Logging configuration.

Every event carries the service name, environment and ledger currency.
Request handlers add ``request_id`` and ``account_id`` through
``bind_request_context`` so balance events can be traced per account.
"""

import logging
import sys
import uuid
from contextlib import contextmanager
from typing import Iterator, Optional

import structlog

from .settings import settings


def _shared_processors() -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.CallsiteParameterAdder(
            {structlog.processors.CallsiteParameter.MODULE}
        ),
    ]


def setup_logging() -> None:
    """Configure structlog and bind the process-wide ledger context."""
    level = settings.log_level.upper()

    if settings.log_format == "json":
        renderer = [
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        renderer = [
            structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S"),
            structlog.dev.ConsoleRenderer(),
        ]

    structlog.configure(
        processors=_shared_processors() + renderer,
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )
    structlog.contextvars.bind_contextvars(
        service=settings.app_name,
        env=settings.env,
        currency=settings.currency,
    )

    # SQLAlchemy and uvicorn log through the standard library
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=getattr(logging, level))


@contextmanager
def bind_request_context(account_id: Optional[str] = None, request_id: Optional[str] = None) -> Iterator[str]:
    """Attach a request id (and the caller's account) to events logged inside the block."""
    request_id = request_id or uuid.uuid4().hex[:12]
    context = {"request_id": request_id}
    if account_id:
        context["account_id"] = account_id
    with structlog.contextvars.bound_contextvars(**context):
        yield request_id


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a logger instance."""
    return structlog.get_logger(name)

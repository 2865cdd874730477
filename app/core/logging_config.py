"""Structured logging for the approval engine, built on structlog.

Modules take a logger once and wrap each engine call in an approval context:

    from app.core.logging_config import approval_context, get_logger
    logger = get_logger(__name__)

    with approval_context(tenant_id="acme", workflow_id=workflow.id):
        logger.info("decision_recorded")  # carries tenant_id and workflow_id

Output is one JSON object per line on stderr. The context lives in
contextvars, so concurrent decisions on different threads never share it.
"""

from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator

import structlog
from structlog.contextvars import bound_contextvars, merge_contextvars

from app.core.settings import get_settings

LOG_LEVEL = get_settings().log_level

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(message)s",
    stream=sys.stderr,
)
# Statement echo is controlled by DB_ECHO, not the application level
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

structlog.configure(
    wrapper_class=structlog.make_filtering_bound_logger(
        getattr(logging, LOG_LEVEL, logging.INFO)
    ),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    processors=[
        merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(indent=None, sort_keys=True),
    ],
)


@contextmanager
def approval_context(**values: Any) -> Iterator[None]:
    """Bind approval identifiers (None values skipped) for the enclosed block.

    Nested blocks override keys and restore the outer values on exit.
    """
    bound = {key: value for key, value in values.items() if value is not None}
    with bound_contextvars(**bound):
        yield


def get_logger(name: str, **bound_values: Any) -> structlog.BoundLogger:
    """Return a JSON logger bound with *bound_values*."""
    return structlog.get_logger(name).bind(logger=name, **bound_values)

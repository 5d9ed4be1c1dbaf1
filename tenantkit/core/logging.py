"""Structured logging with request, user and organization context.

This module keeps request context in contextvars so that every log entry
emitted while a use case runs can carry request_id, user_id and org_id
without threading them through each call. The pipeline binds the context
from the OperationContext at the start of ``execute`` and restores the
previous values when the execution finishes.

Usage:

    import logging
    from tenantkit.core.logging import get_logging_context

    LOGGER = logging.getLogger(__name__)

    async def archive(...):
        context = get_logging_context()
        LOGGER.info(
            "organization_archived",
            extra={**context, "organization_id": str(organization.id)},
        )
"""

from __future__ import annotations

import logging
import logging.config
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

from ecs_logging import StdlibFormatter

from tenantkit.core.config import settings

# ContextVars for execution-scoped logging context
# These survive async context switches and are isolated per task
_request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
_user_id_var: ContextVar[str | None] = ContextVar("user_id", default=None)
_org_id_var: ContextVar[str | None] = ContextVar("org_id", default=None)


def set_request_id(request_id: str) -> None:
    """Set request ID in context for current async task."""
    _request_id_var.set(request_id)


def get_request_id() -> str | None:
    return _request_id_var.get()


def set_user_context(user_id: str, org_id: str | None = None) -> None:
    """Set user and organization context for current task.

    Args:
        user_id: Identifier of the acting principal
        org_id: Organization the operation targets (optional)
    """
    _user_id_var.set(user_id)
    if org_id:
        _org_id_var.set(org_id)


def get_user_id() -> str | None:
    return _user_id_var.get()


def get_org_id() -> str | None:
    return _org_id_var.get()


def get_logging_context() -> dict[str, str | None]:
    """Get all logging context as dict for structured logging.

    Returns:
        Dict with request_id, user_id, org_id (values may be None)

    Example:
        context = get_logging_context()
        logger.info("operation_completed", extra=context)
    """
    return {
        "request_id": get_request_id(),
        "user_id": get_user_id(),
        "org_id": get_org_id(),
    }


@contextmanager
def bind_logging_context(
    request_id: str | None,
    user_id: str | None = None,
    org_id: str | None = None,
) -> Iterator[None]:
    """Bind logging context for the duration of a block.

    Values that are None keep whatever the caller already had bound. The
    previous values are restored on exit, so nested executions (a hook that
    runs another use case) do not leak context into their caller.
    """
    tokens = []
    if request_id is not None:
        tokens.append((_request_id_var, _request_id_var.set(request_id)))
    if user_id is not None:
        tokens.append((_user_id_var, _user_id_var.set(user_id)))
    if org_id is not None:
        tokens.append((_org_id_var, _org_id_var.set(org_id)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def log_with_context(
    logger: logging.Logger,
    level: int,
    message: str,
    extra: dict[str, Any] | None = None,
) -> None:
    """Log message with automatic request context injection.

    Example:
        log_with_context(
            logger,
            logging.INFO,
            "organization_created",
            extra={"organization_id": str(org.id)},
        )
    """
    merged_extra: dict[str, Any] = dict(get_logging_context())
    if extra:
        merged_extra.update(extra)
    logger.log(level, message, extra=merged_extra)


def configure_logging(level: str | None = None) -> None:
    """Install the ECS JSON formatter on the root logger at ``level`` (default: LOG_LEVEL)."""
    level = level or settings.log_level
    logging_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "ecs": {
                "()": StdlibFormatter,
            }
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "formatter": "ecs",
                "stream": "ext://sys.stdout",
            }
        },
        "root": {
            "handlers": ["default"],
            "level": level.upper(),
        },
        "loggers": {
            "sqlalchemy.engine": {"handlers": ["default"], "level": "WARNING", "propagate": False},
        },
    }
    logging.config.dictConfig(logging_config)

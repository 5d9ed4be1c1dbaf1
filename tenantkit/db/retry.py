"""Retry policy for unit-of-work transactions.

``SqlUnitOfWork`` reruns a whole transaction when it fails for a reason
that a fresh attempt can fix: a dropped or invalidated connection, or a
Postgres serialization failure or deadlock. Constraint violations and every
other error propagate on the first attempt.

Usage:
    from tenantkit.db.retry import create_db_retry

    transaction_retry = create_db_retry(max_attempts=5, max_wait=30)

    @transaction_retry
    async def attempt() -> None:
        ...
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import ParamSpec, TypeVar

from sqlalchemy.exc import DBAPIError, OperationalError
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from tenantkit.core.logging import get_logging_context
from tenantkit.core.metrics import record_db_retry

LOGGER = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_WAIT_MULTIPLIER = 1
DEFAULT_MIN_WAIT = 1
DEFAULT_MAX_WAIT = 10

# serialization_failure, deadlock_detected
RETRYABLE_SQLSTATES = frozenset({"40001", "40P01"})


def _sqlstate(exc: DBAPIError) -> str | None:
    orig = exc.orig
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def is_transient_db_error(exc: BaseException) -> bool:
    if isinstance(exc, OperationalError):
        return True
    if isinstance(exc, DBAPIError):
        return exc.connection_invalidated or _sqlstate(exc) in RETRYABLE_SQLSTATES
    return False


def _log_retry_attempt(retry_state: RetryCallState) -> None:
    wait_seconds = getattr(retry_state.next_action, "sleep", 0) if retry_state.next_action else 0
    exception_type = type(retry_state.outcome.exception()).__name__ if retry_state.outcome else "unknown"

    record_db_retry(exception_type)
    LOGGER.warning(
        "db_transaction_retry",
        extra={
            **get_logging_context(),
            "attempt": retry_state.attempt_number,
            "wait_seconds": wait_seconds,
            "exception_type": exception_type,
        },
    )


def create_db_retry(
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    wait_multiplier: float = DEFAULT_WAIT_MULTIPLIER,
    min_wait: float = DEFAULT_MIN_WAIT,
    max_wait: float = DEFAULT_MAX_WAIT,
) -> Callable[[Callable[P, T]], Callable[P, T]]:
    """Build the tenacity decorator for one unit of work.

    Args:
        max_attempts: Attempts including the first one (default: 3)
        wait_multiplier: Multiplier for exponential backoff (default: 1)
        min_wait: Minimum wait between attempts in seconds (default: 1)
        max_wait: Maximum wait between attempts in seconds (default: 10)
    """
    return retry(
        retry=retry_if_exception(is_transient_db_error),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=wait_multiplier, min=min_wait, max=max_wait),
        before_sleep=_log_retry_attempt,
        reraise=True,
    )

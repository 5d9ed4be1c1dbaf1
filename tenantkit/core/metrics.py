"""Prometheus business metrics for use case executions and domain events.

Usage Guidelines:
    - Record metrics AFTER successful operations (post-commit)
    - Use consistent label names across metrics (environment, use_case, etc.)
    - Guard recording with ``settings.enable_metrics``

Usage Examples:

    from tenantkit.core.config import settings
    from tenantkit.core.metrics import users_created_total

    await uow.transaction(work)
    # Increment AFTER successful commit
    users_created_total.labels(environment=settings.environment).inc()

Exposing Metrics:
    The collectors register on the default prometheus_client registry, so
    any exporter (``start_http_server``, an ASGI app) serves them.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager

from prometheus_client import Counter, Gauge, Histogram

from tenantkit.core.config import settings
from tenantkit.core.hooks import HookExecutionEvent

LOGGER = logging.getLogger(__name__)

use_case_executions_total = Counter(
    "use_case_executions_total",
    "Total number of use case executions by outcome",
    ["use_case", "outcome"],
)

use_case_duration_seconds = Histogram(
    "use_case_duration_seconds",
    "Use case execution duration in seconds",
    ["use_case"],
    buckets=[0.001, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0],
)

hook_executions_total = Counter(
    "hook_executions_total",
    "Total number of hook executions reported to the observability adapter",
    ["use_case", "hook"],
)

users_created_total = Counter(
    "users_created_total",
    "Total number of users created",
    ["environment"],
)

organizations_created_total = Counter(
    "organizations_created_total",
    "Total number of organizations created",
    ["environment"],
)

memberships_created_total = Counter(
    "memberships_created_total",
    "Total number of memberships created",
    ["environment"],
)

active_memberships_gauge = Gauge(
    "active_memberships_gauge",
    "Current number of active memberships",
    ["environment"],
)

database_query_duration_seconds = Histogram(
    "database_query_duration_seconds",
    "Database query duration in seconds",
    ["query_type"],
    buckets=[0.001, 0.01, 0.05, 0.1, 0.5, 1.0],
)

db_transaction_retries_total = Counter(
    "db_transaction_retries_total",
    "Unit-of-work transactions rerun after a transient database error",
    ["exception_type"],
)


def record_use_case_execution(use_case: str, outcome: str, duration_seconds: float) -> None:
    if not settings.enable_metrics:
        return
    use_case_executions_total.labels(use_case=use_case, outcome=outcome).inc()
    use_case_duration_seconds.labels(use_case=use_case).observe(duration_seconds)


def record_db_retry(exception_type: str) -> None:
    if settings.enable_metrics:
        db_transaction_retries_total.labels(exception_type=exception_type).inc()


def increment_counter(counter: Counter) -> None:
    """Increment an ``environment``-labelled business counter."""
    if settings.enable_metrics:
        counter.labels(environment=settings.environment).inc()


def adjust_active_memberships(delta: int) -> None:
    if not settings.enable_metrics or delta == 0:
        return
    gauge = active_memberships_gauge.labels(environment=settings.environment)
    if delta > 0:
        gauge.inc(delta)
    else:
        gauge.dec(-delta)


@contextmanager
def time_query(query_type: str) -> Iterator[None]:
    """Observe the wrapped block in ``database_query_duration_seconds``."""
    start = time.perf_counter()
    try:
        yield
    finally:
        if settings.enable_metrics:
            duration = time.perf_counter() - start
            database_query_duration_seconds.labels(query_type=query_type).observe(duration)


class PrometheusObservabilityAdapter:
    """ObservabilityAdapter that counts hook executions per use case and hook."""

    async def log_hook_execution(self, event: HookExecutionEvent) -> None:
        if not settings.enable_metrics:
            return
        hook_executions_total.labels(
            use_case=event.use_case_name.value,
            hook=event.hook_name.value,
        ).inc()
        LOGGER.debug(
            "hook_executed",
            extra={
                "request_id": event.request_id,
                "execution_id": event.execution_id,
                "use_case": event.use_case_name.value,
                "hook": event.hook_name.value,
            },
        )

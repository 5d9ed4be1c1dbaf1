"""Detached (fire-and-forget) tasks.

Side effects that must never fail or delay the primary operation, such as
hook observability and linking pending invitations after registration, are
spawned with ``fire_and_forget``. The task runs on the current event loop;
its failures are logged and never propagated to the caller.

Background tasks should:
- Handle their own exceptions gracefully
- Use structured logging with context (user_id, org_id, etc.)
- Be idempotent where possible
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any
from uuid import UUID

from tenantkit.core.logging import get_logging_context

if TYPE_CHECKING:
    from tenantkit.core.context import OperationContext
    from tenantkit.core.ports import UnitOfWork

logger = logging.getLogger(__name__)

_background_tasks: set[asyncio.Task[Any]] = set()


def _on_task_done(task: asyncio.Task[Any]) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "background_task_failed",
            extra={"task_name": task.get_name(), "exception_type": type(exc).__name__},
            exc_info=exc,
        )


def fire_and_forget(task_fn: Callable[[], Awaitable[Any] | Any], *, name: str) -> asyncio.Task[Any] | None:
    """Start ``task_fn`` without awaiting it.

    ``task_fn`` is called immediately; if it returns an awaitable, that
    awaitable is scheduled as a task and a strong reference is kept until it
    finishes. Exceptions, raised synchronously or by the task, are logged.

    Returns:
        The scheduled task, or None when nothing was scheduled
    """
    try:
        awaitable = task_fn()
    except Exception:
        logger.exception("background_task_failed", extra={"task_name": name})
        return None

    if not asyncio.iscoroutine(awaitable) and not isinstance(awaitable, asyncio.Future):
        return None

    task = asyncio.ensure_future(awaitable)
    if isinstance(task, asyncio.Task):
        task.set_name(name)
    _background_tasks.add(task)
    task.add_done_callback(_on_task_done)
    return task


async def drain_background_tasks() -> None:
    """Wait for every detached task started so far, including ones they spawn."""
    while _background_tasks:
        await asyncio.gather(*list(_background_tasks), return_exceptions=True)


def pending_background_tasks() -> int:
    return len(_background_tasks)


async def link_pending_memberships_task(
    uow: UnitOfWork,
    username: str,
    user_id: UUID,
    context: OperationContext | None = None,
) -> None:
    """Attach pending username invitations to a newly registered user.

    Args:
        uow: Unit of work used for the update transaction
        username: Username the invitations were addressed to
        user_id: Id of the user that registered with that username
        context: Operation context forwarded to the repository for auditing

    Example:
        fire_and_forget(
            lambda: link_pending_memberships_task(uow, user.username, user.id, context),
            name="link_pending_memberships",
        )
    """
    extra = {**get_logging_context(), "user_id": str(user_id), "username": username}
    try:
        logger.info("linking_pending_memberships", extra=extra)

        linked = await uow.transaction(
            lambda repos: repos.organization_memberships.link_username_memberships_to_user_id(
                username, user_id, context
            )
        )

        logger.info("pending_memberships_linked", extra={**extra, "linked_count": linked})
    except Exception:
        error_msg = "Failed to link pending memberships"
        logger.exception(error_msg, extra=extra)

"""SQL unit of work and the adapter bundle built on it."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from tenantkit.core.config import settings
from tenantkit.core.logging import get_logging_context
from tenantkit.core.ports import (
    Adapters,
    Clock,
    ObservabilityAdapter,
    PersistenceAdapter,
    RepositoryBundle,
    SystemAdapter,
    UuidGenerator,
)
from tenantkit.core.system import SystemClock, Uuid4Generator
from tenantkit.db.repositories import (
    SqlOrganizationMembershipRepository,
    SqlOrganizationRepository,
    SqlUserRepository,
)
from tenantkit.db.retry import create_db_retry
from tenantkit.db.session import create_session_maker

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


def _bundle(session: AsyncSession, clock: Clock) -> RepositoryBundle:
    return RepositoryBundle(
        users=SqlUserRepository(session=session),
        organizations=SqlOrganizationRepository(session=session),
        organization_memberships=SqlOrganizationMembershipRepository(session=session, clock=clock),
    )


class SqlUnitOfWork:
    """Run work on one session inside ``session.begin()``.

    The transaction commits when ``work`` returns and rolls back when it
    raises. A transient ``OperationalError`` reruns the whole unit with
    exponential backoff, so ``work`` must not have side effects outside the
    session.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        *,
        clock: Clock | None = None,
        max_attempts: int | None = None,
        min_wait: float = 1,
        max_wait: float = 10,
    ) -> None:
        self.session_maker = session_maker
        self.clock = clock or SystemClock()
        self._retry = create_db_retry(
            max_attempts=max_attempts or settings.db_retry_max_attempts,
            min_wait=min_wait,
            max_wait=max_wait,
        )

    async def transaction(self, work: Callable[[RepositoryBundle], Awaitable[T]]) -> T:
        @self._retry
        async def attempt() -> T:
            async with self.session_maker() as session:
                try:
                    async with session.begin():
                        return await work(_bundle(session, self.clock))
                except Exception:
                    LOGGER.warning("session_rollback", extra=get_logging_context(), exc_info=True)
                    raise

        return await attempt()


def build_sql_adapters(
    engine: AsyncEngine,
    *,
    clock: Clock | None = None,
    uuid: UuidGenerator | None = None,
    observability: ObservabilityAdapter | None = None,
    max_attempts: int | None = None,
) -> Adapters:
    session_maker = create_session_maker(engine)
    clock = clock or SystemClock()
    return Adapters(
        persistence=PersistenceAdapter(
            users=SqlUserRepository(session_maker=session_maker),
            organizations=SqlOrganizationRepository(session_maker=session_maker),
            organization_memberships=SqlOrganizationMembershipRepository(session_maker=session_maker, clock=clock),
            uow=SqlUnitOfWork(session_maker, clock=clock, max_attempts=max_attempts),
        ),
        system=SystemAdapter(clock=clock, uuid=uuid or Uuid4Generator()),
        observability=observability,
    )

"""Interfaces the use cases depend on.

Persistence, time, id generation and hook observability are all supplied
by the caller through an ``Adapters`` bundle. ``tenantkit.db.memory`` and
``tenantkit.db.unit_of_work`` ship the two persistence implementations.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Protocol, TypeVar
from uuid import UUID

from tenantkit.core.context import OperationContext

if TYPE_CHECKING:
    from tenantkit.core.hooks import HookExecutionEvent
    from tenantkit.models.membership import (
        FindMembersOptions,
        OrganizationMembership,
        OrganizationMemberWithUserInfo,
        PaginatedResult,
    )
    from tenantkit.models.organization import Organization, OrganizationFilter
    from tenantkit.models.user import User

T = TypeVar("T")


class UserRepository(Protocol):
    async def find_by_id(self, user_id: UUID) -> User | None: ...

    async def find_by_external_id(self, external_id: str) -> User | None: ...

    async def find_by_username(self, username: str) -> User | None: ...

    async def insert(self, user: User, context: OperationContext | None = None) -> None: ...

    async def update(self, user: User, context: OperationContext | None = None) -> None: ...


class OrganizationRepository(Protocol):
    async def find_by_id(self, organization_id: UUID) -> Organization | None: ...

    async def find_by_owner(self, owner_user_id: UUID) -> list[Organization]: ...

    async def find_by_ids(self, organization_ids: Sequence[UUID]) -> list[Organization]: ...

    async def find_many(self, organization_filter: OrganizationFilter | None = None) -> list[Organization]: ...

    async def count(self) -> int: ...

    async def insert(self, organization: Organization, context: OperationContext | None = None) -> None: ...

    async def update(self, organization: Organization, context: OperationContext | None = None) -> None: ...

    async def delete(self, organization_id: UUID, context: OperationContext | None = None) -> None: ...


class OrganizationMembershipRepository(Protocol):
    async def find_by_id(self, membership_id: UUID) -> OrganizationMembership | None: ...

    async def find_by_user_id_and_organization_id(
        self, user_id: UUID, organization_id: UUID
    ) -> OrganizationMembership | None: ...

    async def find_by_username_and_organization_id(
        self, username: str, organization_id: UUID
    ) -> OrganizationMembership | None: ...

    async def find_by_user(self, user_id: UUID) -> list[OrganizationMembership]: ...

    async def find_by_organization(
        self, organization_id: UUID, active_only: bool = False
    ) -> list[OrganizationMembership]: ...

    async def find_by_organization_with_user_info_paginated(
        self, organization_id: UUID, options: FindMembersOptions
    ) -> PaginatedResult[OrganizationMemberWithUserInfo]: ...

    async def insert(self, membership: OrganizationMembership, context: OperationContext | None = None) -> None: ...

    async def update(self, membership: OrganizationMembership, context: OperationContext | None = None) -> None: ...

    async def delete(self, membership_id: UUID, context: OperationContext | None = None) -> None: ...

    async def link_username_memberships_to_user_id(
        self, username: str, user_id: UUID, context: OperationContext | None = None
    ) -> int:
        """Set ``user_id`` on memberships addressed to ``username`` that have none.

        Returns the number of memberships linked.
        """
        ...


@dataclass(frozen=True)
class RepositoryBundle:
    users: UserRepository
    organizations: OrganizationRepository
    organization_memberships: OrganizationMembershipRepository


class UnitOfWork(Protocol):
    async def transaction(self, work: Callable[[RepositoryBundle], Awaitable[T]]) -> T:
        """Run ``work`` atomically; every write made through the bundle commits or none does."""
        ...


class Clock(Protocol):
    def now(self) -> datetime: ...


class UuidGenerator(Protocol):
    def generate(self) -> UUID: ...


class ObservabilityAdapter(Protocol):
    async def log_hook_execution(self, event: HookExecutionEvent) -> None: ...


@dataclass(frozen=True)
class PersistenceAdapter:
    users: UserRepository
    organizations: OrganizationRepository
    organization_memberships: OrganizationMembershipRepository
    uow: UnitOfWork


@dataclass(frozen=True)
class SystemAdapter:
    clock: Clock
    uuid: UuidGenerator


@dataclass(frozen=True)
class Adapters:
    persistence: PersistenceAdapter
    system: SystemAdapter
    observability: ObservabilityAdapter | None = None

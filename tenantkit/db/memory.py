"""Dict-backed persistence for tests, local development and embedding.

A transaction stages its writes on a copy of the store and swaps the copy
in only when ``work`` returns; if ``work`` raises, the copy is discarded.
Transactions are serialized with an ``asyncio.Lock``. Reads made outside a
transaction see the last committed state.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import TypeVar
from uuid import UUID

from tenantkit.core.context import OperationContext
from tenantkit.core.permissions import is_active_membership, is_pending_invitation, is_removed_membership
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
from tenantkit.models.membership import (
    FindMembersOptions,
    OrganizationMembership,
    OrganizationMemberWithUserInfo,
    PaginatedResult,
)
from tenantkit.models.organization import Organization, OrganizationFilter, OrganizationStatus
from tenantkit.models.user import User

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class DuplicateKeyError(ValueError):
    """Raised when inserting an entity whose id is already stored."""


@dataclass(frozen=True)
class AuditRecord:
    table: str
    operation: str
    entity_id: UUID
    action: str | None
    request_id: str


@dataclass
class InMemoryStore:
    users: dict[UUID, User] = field(default_factory=dict)
    organizations: dict[UUID, Organization] = field(default_factory=dict)
    memberships: dict[UUID, OrganizationMembership] = field(default_factory=dict)
    audit_log: list[AuditRecord] = field(default_factory=list)

    def copy(self) -> InMemoryStore:
        return InMemoryStore(
            users=dict(self.users),
            organizations=dict(self.organizations),
            memberships=dict(self.memberships),
            audit_log=list(self.audit_log),
        )

    def replace_with(self, other: InMemoryStore) -> None:
        self.users = other.users
        self.organizations = other.organizations
        self.memberships = other.memberships
        self.audit_log = other.audit_log

    def audit(self, table: str, operation: str, entity_id: UUID, context: OperationContext | None) -> None:
        if context is None:
            return
        self.audit_log.append(
            AuditRecord(
                table=table,
                operation=operation,
                entity_id=entity_id,
                action=context.audit_action,
                request_id=context.request_id,
            )
        )


def _insert(table: dict[UUID, T], entity_id: UUID, entity: T, name: str) -> None:
    if entity_id in table:
        raise DuplicateKeyError(f"{name} {entity_id} already exists")
    table[entity_id] = entity


class InMemoryUserRepository:
    def __init__(self, store: InMemoryStore) -> None:
        self.store = store

    async def find_by_id(self, user_id: UUID) -> User | None:
        return self.store.users.get(user_id)

    async def find_by_external_id(self, external_id: str) -> User | None:
        return next((u for u in self.store.users.values() if u.external_id == external_id), None)

    async def find_by_username(self, username: str) -> User | None:
        return next((u for u in self.store.users.values() if u.username == username), None)

    async def insert(self, user: User, context: OperationContext | None = None) -> None:
        _insert(self.store.users, user.id, user.model_copy(), "User")
        self.store.audit("users", "insert", user.id, context)

    async def update(self, user: User, context: OperationContext | None = None) -> None:
        if user.id in self.store.users:
            self.store.users[user.id] = user.model_copy()
            self.store.audit("users", "update", user.id, context)


class InMemoryOrganizationRepository:
    def __init__(self, store: InMemoryStore) -> None:
        self.store = store

    async def find_by_id(self, organization_id: UUID) -> Organization | None:
        return self.store.organizations.get(organization_id)

    async def find_by_owner(self, owner_user_id: UUID) -> list[Organization]:
        return [o for o in self.store.organizations.values() if o.owner_user_id == owner_user_id]

    async def find_by_ids(self, organization_ids: Sequence[UUID]) -> list[Organization]:
        found = []
        for organization_id in dict.fromkeys(organization_ids):
            organization = self.store.organizations.get(organization_id)
            if organization is not None:
                found.append(organization)
        return found

    async def find_many(self, organization_filter: OrganizationFilter | None = None) -> list[Organization]:
        organization_filter = organization_filter or OrganizationFilter()
        matches = []
        for organization in sorted(self.store.organizations.values(), key=lambda o: (o.created_at, o.id)):
            if not organization_filter.include_deleted and organization.deleted_at is not None:
                continue
            if organization_filter.owner_user_id and organization.owner_user_id != organization_filter.owner_user_id:
                continue
            if organization_filter.status is OrganizationStatus.ACTIVE and organization.archived_at is not None:
                continue
            if organization_filter.status is OrganizationStatus.ARCHIVED and organization.archived_at is None:
                continue
            matches.append(organization)

        end = None if organization_filter.limit is None else organization_filter.offset + organization_filter.limit
        return matches[organization_filter.offset : end]

    async def count(self) -> int:
        return sum(1 for o in self.store.organizations.values() if o.deleted_at is None)

    async def insert(self, organization: Organization, context: OperationContext | None = None) -> None:
        _insert(self.store.organizations, organization.id, organization.model_copy(), "Organization")
        self.store.audit("organizations", "insert", organization.id, context)

    async def update(self, organization: Organization, context: OperationContext | None = None) -> None:
        if organization.id in self.store.organizations:
            self.store.organizations[organization.id] = organization.model_copy()
            self.store.audit("organizations", "update", organization.id, context)

    async def delete(self, organization_id: UUID, context: OperationContext | None = None) -> None:
        if self.store.organizations.pop(organization_id, None) is not None:
            self.store.audit("organizations", "delete", organization_id, context)


def matches_member_filter(membership: OrganizationMembership, options: FindMembersOptions) -> bool:
    """OR-combine the include flags; with none set every membership matches."""
    if not (options.include_active or options.include_pending or options.include_removed):
        return True
    return bool(
        (options.include_active and is_active_membership(membership))
        or (options.include_pending and is_pending_invitation(membership))
        or (options.include_removed and is_removed_membership(membership))
    )


class InMemoryOrganizationMembershipRepository:
    def __init__(self, store: InMemoryStore, clock: Clock) -> None:
        self.store = store
        self.clock = clock

    def _ordered(self) -> list[OrganizationMembership]:
        return sorted(self.store.memberships.values(), key=lambda m: (m.created_at, m.id))

    async def find_by_id(self, membership_id: UUID) -> OrganizationMembership | None:
        return self.store.memberships.get(membership_id)

    async def find_by_user_id_and_organization_id(
        self, user_id: UUID, organization_id: UUID
    ) -> OrganizationMembership | None:
        return next(
            (m for m in self._ordered() if m.user_id == user_id and m.organization_id == organization_id),
            None,
        )

    async def find_by_username_and_organization_id(
        self, username: str, organization_id: UUID
    ) -> OrganizationMembership | None:
        return next(
            (m for m in self._ordered() if m.username == username and m.organization_id == organization_id),
            None,
        )

    async def find_by_user(self, user_id: UUID) -> list[OrganizationMembership]:
        return [m for m in self._ordered() if m.user_id == user_id]

    async def find_by_organization(
        self, organization_id: UUID, active_only: bool = False
    ) -> list[OrganizationMembership]:
        return [
            m
            for m in self._ordered()
            if m.organization_id == organization_id and (not active_only or is_active_membership(m))
        ]

    async def find_by_organization_with_user_info_paginated(
        self, organization_id: UUID, options: FindMembersOptions
    ) -> PaginatedResult[OrganizationMemberWithUserInfo]:
        matching = [
            m for m in self._ordered() if m.organization_id == organization_id and matches_member_filter(m, options)
        ]
        total = len(matching)
        offset = (options.page - 1) * options.page_size
        page = matching[offset : offset + options.page_size]

        organization = self.store.organizations.get(organization_id)
        items = []
        for membership in page:
            user = self.store.users.get(membership.user_id) if membership.user_id else None
            items.append(
                OrganizationMemberWithUserInfo(
                    **membership.model_dump(),
                    user=user,
                    organization=organization,
                )
            )
        return PaginatedResult(
            items=items,
            total=total,
            page=options.page,
            page_size=options.page_size,
            total_pages=math.ceil(total / options.page_size),
        )

    async def insert(self, membership: OrganizationMembership, context: OperationContext | None = None) -> None:
        _insert(self.store.memberships, membership.id, membership.model_copy(), "OrganizationMembership")
        self.store.audit("organization_memberships", "insert", membership.id, context)

    async def update(self, membership: OrganizationMembership, context: OperationContext | None = None) -> None:
        if membership.id in self.store.memberships:
            self.store.memberships[membership.id] = membership.model_copy()
            self.store.audit("organization_memberships", "update", membership.id, context)

    async def delete(self, membership_id: UUID, context: OperationContext | None = None) -> None:
        if self.store.memberships.pop(membership_id, None) is not None:
            self.store.audit("organization_memberships", "delete", membership_id, context)

    async def link_username_memberships_to_user_id(
        self, username: str, user_id: UUID, context: OperationContext | None = None
    ) -> int:
        linked = 0
        now = self.clock.now()
        for membership in self._ordered():
            if membership.username == username and membership.user_id is None:
                self.store.memberships[membership.id] = membership.model_copy(
                    update={"user_id": user_id, "updated_at": now}
                )
                self.store.audit("organization_memberships", "update", membership.id, context)
                linked += 1
        return linked


def _bundle(store: InMemoryStore, clock: Clock) -> RepositoryBundle:
    return RepositoryBundle(
        users=InMemoryUserRepository(store),
        organizations=InMemoryOrganizationRepository(store),
        organization_memberships=InMemoryOrganizationMembershipRepository(store, clock),
    )


class InMemoryUnitOfWork:
    def __init__(self, store: InMemoryStore, clock: Clock) -> None:
        self.store = store
        self.clock = clock
        self._lock = asyncio.Lock()

    async def transaction(self, work: Callable[[RepositoryBundle], Awaitable[T]]) -> T:
        async with self._lock:
            staged = self.store.copy()
            try:
                result = await work(_bundle(staged, self.clock))
            except Exception:
                LOGGER.debug("in_memory_transaction_rolled_back")
                raise
            self.store.replace_with(staged)
            return result


def build_in_memory_adapters(
    clock: Clock | None = None,
    uuid: UuidGenerator | None = None,
    observability: ObservabilityAdapter | None = None,
    store: InMemoryStore | None = None,
) -> Adapters:
    """Adapters over a fresh (or the given) in-memory store."""
    clock = clock or SystemClock()
    store = store or InMemoryStore()
    repositories = _bundle(store, clock)
    return Adapters(
        persistence=PersistenceAdapter(
            users=repositories.users,
            organizations=repositories.organizations,
            organization_memberships=repositories.organization_memberships,
            uow=InMemoryUnitOfWork(store, clock),
        ),
        system=SystemAdapter(clock=clock, uuid=uuid or Uuid4Generator()),
        observability=observability,
    )

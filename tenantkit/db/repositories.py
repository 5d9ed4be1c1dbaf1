"""SQLAlchemy implementations of the repository interfaces.

A repository either runs on a session owned by a unit of work (every call
joins that transaction) or, when built without one, opens a short-lived
session per call; writes made that way commit immediately.
"""

from __future__ import annotations

import logging
import math
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from typing import Any, TypeVar
from uuid import UUID

import sqlalchemy as sa
from pydantic_core import to_jsonable_python
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import col

from tenantkit.core.context import OperationContext
from tenantkit.core.logging import get_logging_context
from tenantkit.core.metrics import time_query
from tenantkit.core.ports import Clock
from tenantkit.core.system import SystemClock
from tenantkit.db.tables import OrganizationMembershipRecord, OrganizationRecord, TimestampedTable, UserRecord
from tenantkit.models.base import DomainModel
from tenantkit.models.membership import (
    FindMembersOptions,
    OrganizationMembership,
    OrganizationMemberWithUserInfo,
    PaginatedResult,
)
from tenantkit.models.organization import Organization, OrganizationFilter, OrganizationStatus
from tenantkit.models.user import User

LOGGER = logging.getLogger(__name__)

EntityT = TypeVar("EntityT", bound=DomainModel)
RecordT = TypeVar("RecordT", bound=TimestampedTable)


def to_domain(record: TimestampedTable, entity_type: type[EntityT]) -> EntityT:
    values = record.model_dump(exclude={"custom_fields"})
    return entity_type.model_validate({**(record.custom_fields or {}), **values})


def to_record(entity: DomainModel, record_type: type[RecordT]) -> RecordT:
    values = entity.model_dump(exclude=set(entity.custom_fields))
    return record_type(**values, custom_fields=to_jsonable_python(entity.custom_fields))


def _apply(record: TimestampedTable, entity: DomainModel) -> None:
    for field_name, value in entity.model_dump(exclude=set(entity.custom_fields)).items():
        setattr(record, field_name, value)
    record.custom_fields = to_jsonable_python(entity.custom_fields)


def _audit(operation: str, table: str, entity_id: UUID, context: OperationContext | None) -> None:
    if context is None:
        return
    LOGGER.info(
        "audit_event",
        extra={
            **get_logging_context(),
            "table": table,
            "operation": operation,
            "entity_id": str(entity_id),
            "audit_action": context.audit_action,
            "request_id": context.request_id,
            "actor_user_id": str(context.actor_user_id) if context.actor_user_id else None,
            "organization_id": str(context.organization_id) if context.organization_id else None,
        },
    )


class _SqlRepository:
    record_type: type[TimestampedTable]
    entity_type: type[DomainModel]
    table: str

    def __init__(
        self,
        session: AsyncSession | None = None,
        session_maker: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        if session is None and session_maker is None:
            raise ValueError("A session or a session maker is required")
        self._session = session
        self._session_maker = session_maker

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        if self._session is not None:
            yield self._session
            return
        session_maker = self._session_maker
        if session_maker is None:
            raise RuntimeError("Repository has no session maker")
        async with session_maker() as session, session.begin():
            yield session

    async def _scalars(self, statement: Any, query_type: str) -> list[Any]:
        async with self.session() as session:
            with time_query(query_type):
                result = await session.execute(statement)
            return [to_domain(record, self.entity_type) for record in result.scalars().all()]

    async def _first(self, statement: Any, query_type: str) -> Any:
        found = await self._scalars(statement.limit(1), query_type)
        return found[0] if found else None

    async def _get(self, entity_id: UUID) -> Any:
        async with self.session() as session:
            with time_query(f"{self.table}_get"):
                record = await session.get(self.record_type, entity_id)
            return to_domain(record, self.entity_type) if record is not None else None

    async def _insert(self, entity: DomainModel, context: OperationContext | None) -> None:
        async with self.session() as session:
            with time_query(f"{self.table}_insert"):
                session.add(to_record(entity, self.record_type))
                await session.flush()
        _audit("insert", self.table, entity.id, context)

    async def _update(self, entity: DomainModel, context: OperationContext | None) -> None:
        async with self.session() as session:
            with time_query(f"{self.table}_update"):
                record = await session.get(self.record_type, entity.id)
                if record is None:
                    return
                _apply(record, entity)
                await session.flush()
        _audit("update", self.table, entity.id, context)

    async def _delete(self, entity_id: UUID, context: OperationContext | None) -> None:
        async with self.session() as session:
            with time_query(f"{self.table}_delete"):
                record = await session.get(self.record_type, entity_id)
                if record is None:
                    return
                await session.delete(record)
                await session.flush()
        _audit("delete", self.table, entity_id, context)


class SqlUserRepository(_SqlRepository):
    record_type = UserRecord
    entity_type = User
    table = "users"

    async def find_by_id(self, user_id: UUID) -> User | None:
        return await self._get(user_id)

    async def find_by_external_id(self, external_id: str) -> User | None:
        return await self._first(
            select(UserRecord).where(col(UserRecord.external_id) == external_id),
            "users_by_external_id",
        )

    async def find_by_username(self, username: str) -> User | None:
        return await self._first(
            select(UserRecord).where(col(UserRecord.username) == username),
            "users_by_username",
        )

    async def insert(self, user: User, context: OperationContext | None = None) -> None:
        await self._insert(user, context)

    async def update(self, user: User, context: OperationContext | None = None) -> None:
        await self._update(user, context)


class SqlOrganizationRepository(_SqlRepository):
    record_type = OrganizationRecord
    entity_type = Organization
    table = "organizations"

    async def find_by_id(self, organization_id: UUID) -> Organization | None:
        return await self._get(organization_id)

    async def find_by_owner(self, owner_user_id: UUID) -> list[Organization]:
        return await self._scalars(
            select(OrganizationRecord)
            .where(col(OrganizationRecord.owner_user_id) == owner_user_id)
            .order_by(col(OrganizationRecord.created_at), col(OrganizationRecord.id)),
            "organizations_by_owner",
        )

    async def find_by_ids(self, organization_ids: Sequence[UUID]) -> list[Organization]:
        if not organization_ids:
            return []
        found = await self._scalars(
            select(OrganizationRecord).where(col(OrganizationRecord.id).in_(list(organization_ids))),
            "organizations_by_ids",
        )
        by_id = {organization.id: organization for organization in found}
        return [by_id[organization_id] for organization_id in dict.fromkeys(organization_ids) if organization_id in by_id]

    async def find_many(self, organization_filter: OrganizationFilter | None = None) -> list[Organization]:
        organization_filter = organization_filter or OrganizationFilter()
        statement = select(OrganizationRecord).order_by(
            col(OrganizationRecord.created_at), col(OrganizationRecord.id)
        )
        if not organization_filter.include_deleted:
            statement = statement.where(col(OrganizationRecord.deleted_at).is_(None))
        if organization_filter.owner_user_id is not None:
            statement = statement.where(col(OrganizationRecord.owner_user_id) == organization_filter.owner_user_id)
        if organization_filter.status is OrganizationStatus.ACTIVE:
            statement = statement.where(col(OrganizationRecord.archived_at).is_(None))
        elif organization_filter.status is OrganizationStatus.ARCHIVED:
            statement = statement.where(col(OrganizationRecord.archived_at).is_not(None))
        statement = statement.offset(organization_filter.offset)
        if organization_filter.limit is not None:
            statement = statement.limit(organization_filter.limit)
        return await self._scalars(statement, "organizations_find_many")

    async def count(self) -> int:
        async with self.session() as session:
            with time_query("organizations_count"):
                result = await session.execute(
                    select(func.count())
                    .select_from(OrganizationRecord)
                    .where(col(OrganizationRecord.deleted_at).is_(None))
                )
            return int(result.scalar_one())

    async def insert(self, organization: Organization, context: OperationContext | None = None) -> None:
        await self._insert(organization, context)

    async def update(self, organization: Organization, context: OperationContext | None = None) -> None:
        await self._update(organization, context)

    async def delete(self, organization_id: UUID, context: OperationContext | None = None) -> None:
        await self._delete(organization_id, context)


def _member_filter(options: FindMembersOptions) -> sa.ColumnElement[bool] | None:
    record = OrganizationMembershipRecord
    clauses = []
    if options.include_active:
        clauses.append(
            sa.and_(
                col(record.joined_at).is_not(None),
                col(record.left_at).is_(None),
                col(record.deleted_at).is_(None),
            )
        )
    if options.include_pending:
        clauses.append(
            sa.and_(
                col(record.invited_at).is_not(None),
                col(record.joined_at).is_(None),
                col(record.left_at).is_(None),
                col(record.deleted_at).is_(None),
            )
        )
    if options.include_removed:
        clauses.append(or_(col(record.left_at).is_not(None), col(record.deleted_at).is_not(None)))
    return or_(*clauses) if clauses else None


class SqlOrganizationMembershipRepository(_SqlRepository):
    record_type = OrganizationMembershipRecord
    entity_type = OrganizationMembership
    table = "organization_memberships"

    def __init__(
        self,
        session: AsyncSession | None = None,
        session_maker: async_sessionmaker[AsyncSession] | None = None,
        clock: Clock | None = None,
    ) -> None:
        super().__init__(session, session_maker)
        self.clock = clock or SystemClock()

    def _ordered(self) -> Any:
        return select(OrganizationMembershipRecord).order_by(
            col(OrganizationMembershipRecord.created_at), col(OrganizationMembershipRecord.id)
        )

    async def find_by_id(self, membership_id: UUID) -> OrganizationMembership | None:
        return await self._get(membership_id)

    async def find_by_user_id_and_organization_id(
        self, user_id: UUID, organization_id: UUID
    ) -> OrganizationMembership | None:
        return await self._first(
            self._ordered().where(
                col(OrganizationMembershipRecord.user_id) == user_id,
                col(OrganizationMembershipRecord.organization_id) == organization_id,
            ),
            "memberships_by_user_and_org",
        )

    async def find_by_username_and_organization_id(
        self, username: str, organization_id: UUID
    ) -> OrganizationMembership | None:
        return await self._first(
            self._ordered().where(
                col(OrganizationMembershipRecord.username) == username,
                col(OrganizationMembershipRecord.organization_id) == organization_id,
            ),
            "memberships_by_username_and_org",
        )

    async def find_by_user(self, user_id: UUID) -> list[OrganizationMembership]:
        return await self._scalars(
            self._ordered().where(col(OrganizationMembershipRecord.user_id) == user_id),
            "memberships_by_user",
        )

    async def find_by_organization(
        self, organization_id: UUID, active_only: bool = False
    ) -> list[OrganizationMembership]:
        statement = self._ordered().where(col(OrganizationMembershipRecord.organization_id) == organization_id)
        if active_only:
            statement = statement.where(_member_filter(FindMembersOptions(include_active=True)))
        return await self._scalars(statement, "memberships_by_org")

    async def find_by_organization_with_user_info_paginated(
        self, organization_id: UUID, options: FindMembersOptions
    ) -> PaginatedResult[OrganizationMemberWithUserInfo]:
        condition = col(OrganizationMembershipRecord.organization_id) == organization_id
        member_filter = _member_filter(options)
        if member_filter is not None:
            condition = sa.and_(condition, member_filter)

        async with self.session() as session:
            with time_query("memberships_page"):
                total = int(
                    (
                        await session.execute(
                            select(func.count()).select_from(OrganizationMembershipRecord).where(condition)
                        )
                    ).scalar_one()
                )
                page_records = (
                    await session.execute(
                        self._ordered()
                        .where(condition)
                        .offset((options.page - 1) * options.page_size)
                        .limit(options.page_size)
                    )
                ).scalars().all()

                user_ids = {record.user_id for record in page_records if record.user_id is not None}
                users: dict[UUID, User] = {}
                if user_ids:
                    user_records = (
                        await session.execute(select(UserRecord).where(col(UserRecord.id).in_(user_ids)))
                    ).scalars().all()
                    users = {record.id: to_domain(record, User) for record in user_records}
                organization_record = await session.get(OrganizationRecord, organization_id)

        organization = to_domain(organization_record, Organization) if organization_record else None
        items = [
            OrganizationMemberWithUserInfo(
                **to_domain(record, OrganizationMembership).model_dump(),
                user=users.get(record.user_id) if record.user_id else None,
                organization=organization,
            )
            for record in page_records
        ]
        return PaginatedResult(
            items=items,
            total=total,
            page=options.page,
            page_size=options.page_size,
            total_pages=math.ceil(total / options.page_size),
        )

    async def insert(self, membership: OrganizationMembership, context: OperationContext | None = None) -> None:
        await self._insert(membership, context)

    async def update(self, membership: OrganizationMembership, context: OperationContext | None = None) -> None:
        await self._update(membership, context)

    async def delete(self, membership_id: UUID, context: OperationContext | None = None) -> None:
        await self._delete(membership_id, context)

    async def link_username_memberships_to_user_id(
        self, username: str, user_id: UUID, context: OperationContext | None = None
    ) -> int:
        async with self.session() as session:
            with time_query("memberships_link_username"):
                result = await session.execute(
                    sa.update(OrganizationMembershipRecord)
                    .where(
                        col(OrganizationMembershipRecord.username) == username,
                        col(OrganizationMembershipRecord.user_id).is_(None),
                    )
                    .values(user_id=user_id, updated_at=self.clock.now())
                )
        linked = result.rowcount or 0
        LOGGER.info(
            "audit_event",
            extra={
                **get_logging_context(),
                "table": self.table,
                "operation": "link_username",
                "username": username,
                "user_id": str(user_id),
                "linked_count": linked,
                "audit_action": context.audit_action if context else None,
            },
        )
        return linked

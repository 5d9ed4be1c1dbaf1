"""Shared fixtures for tenantkit tests.

Unit tests run every use case against the in-memory adapter with a fixed
clock, so timestamps are deterministic. Detached tasks spawned during a test
are drained before the test finishes.
"""

from collections.abc import AsyncGenerator, Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

import pytest

from tenantkit.core.background_tasks import drain_background_tasks
from tenantkit.core.context import OperationContext
from tenantkit.core.options import ToolkitOptions
from tenantkit.core.ports import Adapters
from tenantkit.core.system import FixedClock
from tenantkit.db.memory import InMemoryStore, build_in_memory_adapters
from tenantkit.models.membership import OrganizationMembership, OrganizationRole
from tenantkit.models.organization import Organization
from tenantkit.models.user import User
from tenantkit.services.factory import UseCases, build_use_cases

FIXED_NOW = datetime(2024, 1, 15, 12, 0, tzinfo=UTC)


@dataclass
class Member:
    user: User
    membership: OrganizationMembership


@dataclass
class OrgWorld:
    """An organization with an owner, an active admin and an active member."""

    owner: User
    organization: Organization
    admin: User
    member: User


def context_for(external_id: str | None = None, **kwargs: Any) -> OperationContext:
    return OperationContext(request_id="req-test", external_id=external_id, **kwargs)


@pytest.fixture
def context_factory() -> Callable[..., OperationContext]:
    return context_for


@pytest.fixture(autouse=True)
async def drain_detached_tasks() -> AsyncGenerator[None]:
    yield
    await drain_background_tasks()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(FIXED_NOW)


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def adapters(clock: FixedClock, store: InMemoryStore) -> Adapters:
    return build_in_memory_adapters(clock=clock, store=store)


@pytest.fixture
def toolkit_options() -> ToolkitOptions:
    return ToolkitOptions(link_pending_memberships=True)


@pytest.fixture
def use_cases(adapters: Adapters, toolkit_options: ToolkitOptions) -> UseCases:
    return build_use_cases(adapters, toolkit_options)


@pytest.fixture
def create_user(use_cases: UseCases) -> Callable[[str], Awaitable[User]]:
    """Register a user whose external id is ``ext-<username>``."""

    async def _create(username: str, **custom_fields: Any) -> User:
        result = await use_cases.create_user.execute(
            {"username": username, "external_id": f"ext-{username}", **custom_fields},
            context_for(),
        )
        assert result.is_success, result
        return result.get_value()

    return _create


@pytest.fixture
def create_organization(use_cases: UseCases) -> Callable[[User], Awaitable[Organization]]:
    async def _create(owner: User, **custom_fields: Any) -> Organization:
        result = await use_cases.create_organization.execute(
            {"principal_external_id": owner.external_id, **custom_fields},
            context_for(owner.external_id),
        )
        assert result.is_success, result
        return result.get_value()

    return _create


@pytest.fixture
def add_active_member(use_cases: UseCases) -> Callable[..., Awaitable[OrganizationMembership]]:
    """Invite ``user`` as ``inviter`` and accept the invitation."""

    async def _add(
        organization_id: UUID,
        inviter: User,
        user: User,
        role: OrganizationRole = OrganizationRole.MEMBER,
    ) -> OrganizationMembership:
        invited = await use_cases.add_organization_member.execute(
            {
                "principal_external_id": inviter.external_id,
                "organization_id": organization_id,
                "username": user.username,
                "role_code": role,
            },
            context_for(inviter.external_id),
        )
        assert invited.is_success, invited
        accepted = await use_cases.accept_organization_invitation.execute(
            {
                "principal_external_id": user.external_id,
                "organization_id": organization_id,
                "username": user.username,
            },
            context_for(user.external_id),
        )
        assert accepted.is_success, accepted
        return accepted.get_value()

    return _add


@pytest.fixture
async def org_world(
    create_user: Callable[[str], Awaitable[User]],
    create_organization: Callable[[User], Awaitable[Organization]],
    add_active_member: Callable[..., Awaitable[OrganizationMembership]],
) -> OrgWorld:
    owner = await create_user("owner")
    organization = await create_organization(owner)
    admin = await create_user("admin")
    member = await create_user("member")
    await add_active_member(organization.id, owner, admin, OrganizationRole.ADMIN)
    await add_active_member(organization.id, owner, member)
    return OrgWorld(owner=owner, organization=organization, admin=admin, member=member)

"""Organization membership entity, listing types and membership use case schemas."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Generic, TypeVar
from uuid import UUID

from sqlmodel import Field, SQLModel

from tenantkit.core.config import settings
from tenantkit.models.base import DomainModel, InputModel
from tenantkit.models.organization import Organization
from tenantkit.models.user import User

T = TypeVar("T")


class OrganizationRole(str, enum.Enum):
    """Role levels for organization members.

    Roles enforce a hierarchy: OWNER > ADMIN > MEMBER

    - OWNER: the organization's single owner, mirrors ``Organization.owner_user_id``
    - ADMIN: can invite members and change member roles
    - MEMBER: can use organization resources
    """

    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


class OrganizationMembership(DomainModel):
    """Link between a user (or a pending username) and an organization.

    The lifecycle timestamps are independent; their combination encodes the
    state (pending invitation, active, left, removed).
    """

    id: UUID
    user_id: UUID | None = None
    username: str
    organization_id: UUID
    role_code: OrganizationRole
    invited_at: datetime | None = None
    joined_at: datetime | None = None
    left_at: datetime | None = None
    deleted_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class OrganizationMemberWithUserInfo(OrganizationMembership):
    user: User | None = None
    organization: Organization


class FindMembersOptions(SQLModel):
    """Filters and pagination for listing organization members.

    Filters combine with OR:
    - include_active: joined, not left, not deleted
    - include_pending: invited, not joined, not left, not deleted
    - include_removed: left or deleted
    """

    include_active: bool | None = None
    include_pending: bool | None = None
    include_removed: bool | None = None
    page: int = Field(default=1, ge=1)
    page_size: int = Field(
        default=settings.members_page_size,
        ge=1,
        le=settings.members_page_size_max,
    )


class PaginationMetadata(SQLModel):
    total: int = Field(ge=0)
    page: int = Field(ge=1)
    page_size: int = Field(ge=1)
    total_pages: int = Field(ge=0)


@dataclass
class PaginatedResult(Generic[T]):
    """Flat page returned by repositories."""

    items: list[T]
    total: int
    page: int
    page_size: int
    total_pages: int


class ListOrganizationMembersOutput(SQLModel):
    items: list[OrganizationMemberWithUserInfo]
    pagination: PaginationMetadata


class AddOrganizationMemberInput(InputModel):
    principal_external_id: str
    organization_id: UUID
    username: str = Field(min_length=1)
    role_code: OrganizationRole


class AcceptOrganizationInvitationInput(InputModel):
    principal_external_id: str
    organization_id: UUID
    username: str = Field(min_length=1)


class LeaveOrganizationInput(InputModel):
    principal_external_id: str
    organization_id: UUID


class RemoveOrganizationMemberInput(InputModel):
    principal_external_id: str
    organization_id: UUID
    target_user: str = Field(description="Target user id, or username when remove_by_username is set")
    remove_by_username: bool = False


class UpdateOrganizationMemberRoleInput(InputModel):
    principal_external_id: str
    organization_id: UUID
    target_user_id: UUID
    role_code: OrganizationRole


class ListOrganizationMembersInput(InputModel):
    principal_external_id: str
    organization_id: UUID
    options: FindMembersOptions = Field(default_factory=FindMembersOptions)

"""Organization entity and organization use case schemas."""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlmodel import Field, SQLModel

from tenantkit.models.base import CustomizableInput, DomainModel, InputModel


class OrganizationStatus(str, enum.Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"


class Organization(DomainModel):
    id: UUID
    owner_user_id: UUID
    created_at: datetime
    updated_at: datetime
    archived_at: datetime | None = None
    deleted_at: datetime | None = None


class OrganizationFilter(SQLModel):
    """Query options for ``OrganizationRepository.find_many``.

    ``status`` selects non-archived (active) or archived organizations;
    soft-deleted rows are skipped unless ``include_deleted`` is set.
    """

    owner_user_id: UUID | None = None
    status: OrganizationStatus | None = None
    include_deleted: bool = False
    limit: int | None = Field(default=None, ge=1)
    offset: int = Field(default=0, ge=0)


class CreateOrganizationInput(CustomizableInput):
    principal_external_id: str
    owner_membership_custom_fields: dict[str, Any] | None = None


class GetOrganizationInput(InputModel):
    organization_id: UUID
    principal_external_id: str


class UpdateOrganizationInput(CustomizableInput):
    organization_id: UUID
    principal_external_id: str


class ArchiveOrganizationInput(InputModel):
    organization_id: UUID
    principal_external_id: str


class RestoreOrganizationInput(InputModel):
    organization_id: UUID


class DeleteOrganizationInput(InputModel):
    organization_id: UUID
    principal_external_id: str


class TransferOrganizationOwnershipInput(InputModel):
    organization_id: UUID
    new_owner_id: UUID

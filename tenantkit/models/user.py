"""User entity and user use case schemas."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlmodel import Field

from tenantkit.models.base import CustomizableInput, DomainModel, InputModel

MAX_USERNAME_LENGTH = 255


class User(DomainModel):
    id: UUID
    external_id: str
    username: str
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None = None


class CreateUserInput(CustomizableInput):
    id: UUID | None = None
    external_id: str | None = Field(default=None, min_length=1)
    username: str = Field(min_length=1, max_length=MAX_USERNAME_LENGTH)


class GetUserInput(InputModel):
    principal_external_id: str


class UpdateUserInput(CustomizableInput):
    principal_external_id: str
    username: str | None = Field(default=None, min_length=1, max_length=MAX_USERNAME_LENGTH)


class DeleteUserInput(InputModel):
    principal_external_id: str


class ListUserOrganizationsInput(InputModel):
    principal_external_id: str

"""SQLModel tables backing the SQL persistence adapter.

Ids and timestamps are assigned by the use cases, so the server defaults only
cover rows written by hand. Custom fields live in a JSON ``custom_fields``
column and are spread back onto the domain entity when a row is loaded.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from tenantkit.models.membership import OrganizationRole


class TimestampedTable(SQLModel):
    id: UUID = Field(  # type: ignore[call-overload]
        primary_key=True,
        sa_type=sa.UUID(as_uuid=True),
        sa_column_kwargs={"nullable": False},
    )
    created_at: datetime = Field(
        sa_type=sa.DateTime(timezone=True),
        sa_column_kwargs={
            "server_default": sa.func.now(),
            "nullable": False,
        },
        index=True,
    )
    updated_at: datetime = Field(
        sa_type=sa.DateTime(timezone=True),
        sa_column_kwargs={
            "server_default": sa.func.now(),
            "nullable": False,
        },
    )
    deleted_at: datetime | None = Field(default=None, sa_type=sa.DateTime(timezone=True))
    custom_fields: dict[str, Any] = Field(
        default_factory=dict,
        sa_type=sa.JSON,
        sa_column_kwargs={"nullable": False},
    )


class UserRecord(TimestampedTable, table=True):
    __tablename__ = "users"

    external_id: str = Field(sa_column=sa.Column(sa.String(255), nullable=False, unique=True))
    username: str = Field(sa_column=sa.Column(sa.String(255), nullable=False, unique=True))


class OrganizationRecord(TimestampedTable, table=True):
    __tablename__ = "organizations"

    owner_user_id: UUID = Field(
        sa_column=sa.Column(
            sa.UUID(as_uuid=True),
            sa.ForeignKey("users.id"),
            nullable=False,
            index=True,
        )
    )
    archived_at: datetime | None = Field(default=None, sa_type=sa.DateTime(timezone=True))


class OrganizationMembershipRecord(TimestampedTable, table=True):
    __tablename__ = "organization_memberships"

    __table_args__ = (
        sa.Index("ix_organization_memberships_user_id", "user_id"),
        sa.Index("ix_organization_memberships_org_username", "organization_id", "username"),
    )

    user_id: UUID | None = Field(
        default=None,
        sa_column=sa.Column(
            sa.UUID(as_uuid=True),
            sa.ForeignKey("users.id"),
            nullable=True,
        ),
    )
    username: str = Field(sa_column=sa.Column(sa.String(255), nullable=False))
    organization_id: UUID = Field(
        sa_column=sa.Column(
            sa.UUID(as_uuid=True),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
        )
    )
    role_code: OrganizationRole = Field(
        default=OrganizationRole.MEMBER,
        sa_column=sa.Column(
            sa.Enum(
                OrganizationRole,
                name="organization_role",
                native_enum=False,
                values_callable=lambda roles: [role.value for role in roles],
            ),
            nullable=False,
            server_default="member",
        ),
    )
    invited_at: datetime | None = Field(default=None, sa_type=sa.DateTime(timezone=True))
    joined_at: datetime | None = Field(default=None, sa_type=sa.DateTime(timezone=True))
    left_at: datetime | None = Field(default=None, sa_type=sa.DateTime(timezone=True))

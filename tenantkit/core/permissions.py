"""Role-based access rules for organization operations.

Key principles:
- ROLE HIERARCHY: OWNER > ADMIN > MEMBER
- ONLY ACTIVE MEMBERSHIPS COUNT: an admin who left or was removed has no rights
- THE OWNER IS THE ORGANIZATION'S ``owner_user_id``, not a membership row
- FAIL CLOSED: a missing membership resolves to no role

Usage:

    from tenantkit.core.permissions import permission_denied, resolve_actor_role

    role = resolve_actor_role(organization, actor_membership, actor.id)
    if not can_assign_role(role, input.role_code):
        return Result.fail(permission_denied("Insufficient permissions to assign this role", ...))
"""

from __future__ import annotations

import logging
from uuid import UUID

from tenantkit.core.errors import UnauthorizedError
from tenantkit.core.logging import get_logging_context
from tenantkit.models.membership import OrganizationMembership, OrganizationRole
from tenantkit.models.organization import Organization

LOGGER = logging.getLogger(__name__)

_HIERARCHY = {
    OrganizationRole.OWNER: 3,
    OrganizationRole.ADMIN: 2,
    OrganizationRole.MEMBER: 1,
}


def is_active_membership(membership: OrganizationMembership | None) -> bool:
    return (
        membership is not None
        and membership.joined_at is not None
        and membership.left_at is None
        and membership.deleted_at is None
    )


def is_pending_invitation(membership: OrganizationMembership) -> bool:
    return (
        membership.invited_at is not None
        and membership.joined_at is None
        and membership.left_at is None
        and membership.deleted_at is None
    )


def is_removed_membership(membership: OrganizationMembership) -> bool:
    return membership.left_at is not None or membership.deleted_at is not None


def is_active_admin(membership: OrganizationMembership | None) -> bool:
    return membership is not None and is_active_membership(membership) and membership.role_code == OrganizationRole.ADMIN


def role_hierarchy_check(user_role: OrganizationRole | None, required_role: OrganizationRole) -> bool:
    """Check if user's role satisfies the required role.

    Examples:
        OWNER satisfies ADMIN requirement: True
        ADMIN satisfies OWNER requirement: False
        None satisfies MEMBER requirement: False
    """
    if user_role is None:
        return False
    return _HIERARCHY.get(user_role, 0) >= _HIERARCHY.get(required_role, 0)


def resolve_actor_role(
    organization: Organization,
    membership: OrganizationMembership | None,
    user_id: UUID,
) -> OrganizationRole | None:
    """Effective role of ``user_id`` in ``organization``.

    Ownership comes from the organization record; every other role only
    counts while the membership is active.
    """
    if organization.owner_user_id == user_id:
        return OrganizationRole.OWNER
    if membership is None or not is_active_membership(membership):
        return None
    return membership.role_code


def can_assign_role(actor_role: OrganizationRole | None, role: OrganizationRole) -> bool:
    """Owners may grant any role; admins may only grant roles below their own."""
    if actor_role == OrganizationRole.OWNER:
        return True
    if actor_role is None or not role_hierarchy_check(actor_role, OrganizationRole.ADMIN):
        return False
    return _HIERARCHY[role] < _HIERARCHY[actor_role]


def permission_denied(
    action: str,
    *,
    user_id: UUID | None,
    organization_id: UUID | None,
    actor_role: OrganizationRole | None = None,
) -> UnauthorizedError:
    LOGGER.warning(
        "permission_denied",
        extra={
            **get_logging_context(),
            "actor_user_id": str(user_id) if user_id else None,
            "organization_id": str(organization_id) if organization_id else None,
            "actor_role": actor_role.value if actor_role else None,
            "action": action,
        },
    )
    return UnauthorizedError(action)

"""Organization membership use cases.

A membership row moves through invite -> accept -> leave / remove, with
re-invitation reusing a row that was left. Every transition reads the
pre-state, builds the new entity with ``model_copy`` and writes it inside a
unit of work tagged with an audit action.
"""

from __future__ import annotations

import logging
from uuid import UUID

from tenantkit.core.context import OperationContext, enrich_audit_context
from tenantkit.core.errors import ConflictError, DomainError, NotFoundError, ValidationError
from tenantkit.core.hooks import UseCaseName
from tenantkit.core.metrics import adjust_active_memberships, increment_counter, memberships_created_total
from tenantkit.core.permissions import (
    can_assign_role,
    is_active_admin,
    is_active_membership,
    is_pending_invitation,
    permission_denied,
    resolve_actor_role,
)
from tenantkit.core.ports import RepositoryBundle
from tenantkit.core.results import Result
from tenantkit.core.use_case import BaseUseCase
from tenantkit.models.membership import (
    AcceptOrganizationInvitationInput,
    AddOrganizationMemberInput,
    LeaveOrganizationInput,
    OrganizationMembership,
    OrganizationRole,
    RemoveOrganizationMemberInput,
    UpdateOrganizationMemberRoleInput,
)

LOGGER = logging.getLogger(__name__)


class AddOrganizationMember(BaseUseCase[AddOrganizationMemberInput, OrganizationMembership]):
    """Invite a username to an organization, or re-invite a member who left.

    Owners may invite with any role; active admins may only invite members.
    The membership is created pending (``invited_at`` set, ``joined_at``
    unset) and carries ``user_id`` only when the username is already
    registered.
    """

    name = UseCaseName.ADD_ORGANIZATION_MEMBER
    input_schema = AddOrganizationMemberInput
    output_schema = OrganizationMembership
    error_message = "Failed to add organization member"

    async def authorize(self, validated_input: AddOrganizationMemberInput, context: OperationContext) -> Result[None, DomainError]:
        persistence = self.adapters.persistence
        organization = await persistence.organizations.find_by_id(validated_input.organization_id)
        if organization is None:
            return Result.fail(NotFoundError("Organization", validated_input.organization_id))
        if organization.archived_at is not None:
            return Result.fail(
                ValidationError("Cannot add members to an archived organization", "organization_id")
            )

        actor_result = await self.get_user_from_external_id(validated_input.principal_external_id)
        if actor_result.is_failure:
            return Result.fail(actor_result.get_error())
        actor = actor_result.get_value()

        actor_membership = await persistence.organization_memberships.find_by_user_id_and_organization_id(
            actor.id, organization.id
        )
        actor_role = resolve_actor_role(organization, actor_membership, actor.id)
        if not can_assign_role(actor_role, validated_input.role_code):
            return Result.fail(
                permission_denied(
                    "Only organization owners and admins can add members",
                    user_id=actor.id,
                    organization_id=organization.id,
                    actor_role=actor_role,
                )
            )
        return Result.ok(None)

    async def execute_business_logic(
        self, validated_input: AddOrganizationMemberInput, context: OperationContext
    ) -> Result[OrganizationMembership, DomainError]:
        persistence = self.adapters.persistence
        organization_id = validated_input.organization_id
        target_user = await persistence.users.find_by_username(validated_input.username)
        now = self.now()

        existing: OrganizationMembership | None = None
        if target_user is not None:
            existing = await persistence.organization_memberships.find_by_user_id_and_organization_id(
                target_user.id, organization_id
            )
            if existing is not None and existing.left_at is None and existing.deleted_at is None:
                return Result.fail(
                    ConflictError(
                        "OrganizationMembership",
                        f"{target_user.id}:{organization_id}",
                        {"reason": "User is already a member of this organization"},
                    )
                )
        if existing is None:
            pending = await persistence.organization_memberships.find_by_username_and_organization_id(
                validated_input.username, organization_id
            )
            if pending is not None and is_pending_invitation(pending):
                return Result.fail(
                    ConflictError(
                        "OrganizationMembership",
                        f"{validated_input.username}:{organization_id}",
                        {"reason": "Username already has a pending invitation to this organization"},
                    )
                )

        reactivate = existing is not None and existing.left_at is not None and existing.deleted_at is None
        if reactivate and existing is not None:
            membership = existing.model_copy(
                update={
                    "invited_at": now,
                    "joined_at": None,
                    "left_at": None,
                    "deleted_at": None,
                    "role_code": validated_input.role_code,
                    "updated_at": now,
                }
            )
        else:
            membership = OrganizationMembership(
                id=self.new_id(),
                user_id=target_user.id if target_user is not None else None,
                username=validated_input.username,
                organization_id=organization_id,
                role_code=validated_input.role_code,
                invited_at=now,
                created_at=now,
                updated_at=now,
            )

        audit_context = enrich_audit_context(context, "ADD_ORGANIZATION_MEMBER", organization_id)

        async def work(repos: RepositoryBundle) -> None:
            if reactivate:
                await repos.organization_memberships.update(membership, audit_context)
            else:
                await repos.organization_memberships.insert(membership, audit_context)

        saved = await self.run_transaction(work, "Failed to save organization membership")
        if saved.is_failure:
            return Result.fail(saved.get_error())

        if not reactivate:
            increment_counter(memberships_created_total)
        LOGGER.info(
            "organization_member_invited",
            extra={
                "membership_id": str(membership.id),
                "organization_id": str(organization_id),
                "role_code": membership.role_code.value,
                "reactivated": reactivate,
            },
        )
        return Result.ok(membership)


class AcceptOrganizationInvitation(BaseUseCase[AcceptOrganizationInvitationInput, OrganizationMembership]):
    name = UseCaseName.ACCEPT_ORGANIZATION_INVITATION
    input_schema = AcceptOrganizationInvitationInput
    output_schema = OrganizationMembership
    error_message = "Failed to accept organization invitation"

    async def execute_business_logic(
        self, validated_input: AcceptOrganizationInvitationInput, context: OperationContext
    ) -> Result[OrganizationMembership, DomainError]:
        user_result = await self.get_user_from_external_id(validated_input.principal_external_id)
        if user_result.is_failure:
            return Result.fail(user_result.get_error())
        user = user_result.get_value()

        if user.username != validated_input.username:
            return Result.fail(
                ValidationError(
                    "Username mismatch: You can only accept invitations sent to your username",
                    "username",
                )
            )

        organization_id = validated_input.organization_id
        invitation = await self.adapters.persistence.organization_memberships.find_by_username_and_organization_id(
            validated_input.username, organization_id
        )
        if invitation is None:
            return Result.fail(
                NotFoundError("OrganizationInvitation", f"{validated_input.username}:{organization_id}")
            )

        # Checked in this order so the most specific reason wins.
        if invitation.invited_at is None:
            return Result.fail(ValidationError("No pending invitation found for this organization", "organization_id"))
        if invitation.left_at is not None:
            return Result.fail(
                ValidationError("Cannot accept invitation: membership was previously left", "organization_id")
            )
        if invitation.deleted_at is not None:
            return Result.fail(
                ValidationError("Cannot accept invitation: invitation has been revoked", "organization_id")
            )
        if invitation.joined_at is not None:
            return Result.fail(ValidationError("Invitation has already been accepted", "organization_id"))

        now = self.now()
        accepted = invitation.model_copy(update={"user_id": user.id, "joined_at": now, "updated_at": now})
        audit_context = enrich_audit_context(context, "ACCEPT_ORGANIZATION_INVITATION", organization_id)

        saved = await self.run_transaction(
            lambda repos: repos.organization_memberships.update(accepted, audit_context),
            "Failed to accept organization invitation",
        )
        if saved.is_failure:
            return Result.fail(saved.get_error())

        adjust_active_memberships(1)
        return Result.ok(accepted)


class LeaveOrganization(BaseUseCase[LeaveOrganizationInput, OrganizationMembership]):
    name = UseCaseName.LEAVE_ORGANIZATION
    input_schema = LeaveOrganizationInput
    output_schema = OrganizationMembership
    error_message = "Failed to leave organization"

    async def execute_business_logic(
        self, validated_input: LeaveOrganizationInput, context: OperationContext
    ) -> Result[OrganizationMembership, DomainError]:
        persistence = self.adapters.persistence
        organization_id = validated_input.organization_id
        organization = await persistence.organizations.find_by_id(organization_id)
        if organization is None:
            return Result.fail(NotFoundError("Organization", organization_id))

        user_result = await self.get_user_from_external_id(validated_input.principal_external_id)
        if user_result.is_failure:
            return Result.fail(user_result.get_error())
        user = user_result.get_value()

        membership = await persistence.organization_memberships.find_by_user_id_and_organization_id(
            user.id, organization_id
        )
        if membership is None or membership.left_at is not None:
            return Result.fail(NotFoundError("OrganizationMembership", f"{user.id}:{organization_id}"))

        if organization.owner_user_id == user.id:
            return Result.fail(ValidationError("Organization owner cannot leave. Transfer ownership first."))

        was_active = is_active_membership(membership)
        now = self.now()
        left = membership.model_copy(update={"left_at": now, "updated_at": now})
        audit_context = enrich_audit_context(context, "LEAVE_ORGANIZATION", organization_id)

        saved = await self.run_transaction(
            lambda repos: repos.organization_memberships.update(left, audit_context),
            "Failed to leave organization",
        )
        if saved.is_failure:
            return Result.fail(saved.get_error())

        if was_active:
            adjust_active_memberships(-1)
        return Result.ok(left)


class RemoveOrganizationMember(BaseUseCase[RemoveOrganizationMemberInput, None]):
    """Physically delete a membership row.

    Owners may remove anyone but themselves; active admins may remove only
    targets whose current role is member. Pending invitations can be removed
    the same way, which revokes them.
    """

    name = UseCaseName.REMOVE_ORGANIZATION_MEMBER
    input_schema = RemoveOrganizationMemberInput
    output_schema = type(None)
    error_message = "Failed to remove organization member"

    async def _find_target(self, validated_input: RemoveOrganizationMemberInput) -> OrganizationMembership | None:
        memberships = self.adapters.persistence.organization_memberships
        organization_id = validated_input.organization_id
        if validated_input.remove_by_username:
            return await memberships.find_by_username_and_organization_id(validated_input.target_user, organization_id)
        try:
            target_user_id = UUID(validated_input.target_user)
        except ValueError:
            return None
        return await memberships.find_by_user_id_and_organization_id(target_user_id, organization_id)

    async def authorize(self, validated_input: RemoveOrganizationMemberInput, context: OperationContext) -> Result[None, DomainError]:
        persistence = self.adapters.persistence
        organization_id = validated_input.organization_id
        organization = await persistence.organizations.find_by_id(organization_id)
        if organization is None:
            return Result.fail(NotFoundError("Organization", organization_id))

        actor_result = await self.get_user_from_external_id(validated_input.principal_external_id)
        if actor_result.is_failure:
            return Result.fail(actor_result.get_error())
        actor = actor_result.get_value()

        target = await self._find_target(validated_input)
        if target is None or target.left_at is not None or target.deleted_at is not None:
            return Result.fail(
                NotFoundError("OrganizationMembership", f"{validated_input.target_user}:{organization_id}")
            )

        if target.user_id is not None and organization.owner_user_id == target.user_id:
            return Result.fail(ValidationError("Organization owner cannot be removed. Transfer ownership first."))

        actor_membership = await persistence.organization_memberships.find_by_user_id_and_organization_id(
            actor.id, organization_id
        )
        is_owner = organization.owner_user_id == actor.id
        if not (is_owner or (is_active_admin(actor_membership) and target.role_code == OrganizationRole.MEMBER)):
            return Result.fail(
                permission_denied(
                    "Insufficient permissions to remove this member",
                    user_id=actor.id,
                    organization_id=organization_id,
                    actor_role=resolve_actor_role(organization, actor_membership, actor.id),
                )
            )
        return Result.ok(None)

    async def execute_business_logic(
        self, validated_input: RemoveOrganizationMemberInput, context: OperationContext
    ) -> Result[None, DomainError]:
        organization_id = validated_input.organization_id
        target = await self._find_target(validated_input)
        if target is None:
            return Result.fail(
                NotFoundError("OrganizationMembership", f"{validated_input.target_user}:{organization_id}")
            )

        audit_context = enrich_audit_context(context, "REMOVE_ORGANIZATION_MEMBER", organization_id)
        saved = await self.run_transaction(
            lambda repos: repos.organization_memberships.delete(target.id, audit_context),
            "Failed to remove organization member",
        )
        if saved.is_failure:
            return Result.fail(saved.get_error())

        if is_active_membership(target):
            adjust_active_memberships(-1)
        LOGGER.info(
            "organization_member_removed",
            extra={"membership_id": str(target.id), "organization_id": str(organization_id)},
        )
        return Result.ok(None)


class UpdateOrganizationMemberRole(BaseUseCase[UpdateOrganizationMemberRoleInput, OrganizationMembership]):
    """Change the role of an active member.

    Owners may assign any role. Admins may only assign member, whatever the
    target's current role is. The owner's own membership is changed only by
    an ownership transfer.
    """

    name = UseCaseName.UPDATE_ORGANIZATION_MEMBER_ROLE
    input_schema = UpdateOrganizationMemberRoleInput
    output_schema = OrganizationMembership
    error_message = "Failed to update organization member role"

    async def authorize(
        self, validated_input: UpdateOrganizationMemberRoleInput, context: OperationContext
    ) -> Result[None, DomainError]:
        persistence = self.adapters.persistence
        organization_id = validated_input.organization_id
        organization = await persistence.organizations.find_by_id(organization_id)
        if organization is None:
            return Result.fail(NotFoundError("Organization", organization_id))
        if organization.archived_at is not None:
            return Result.fail(
                ValidationError("Cannot update member roles in an archived organization", "organization_id")
            )

        actor_result = await self.get_user_from_external_id(validated_input.principal_external_id)
        if actor_result.is_failure:
            return Result.fail(actor_result.get_error())
        actor = actor_result.get_value()

        target = await persistence.organization_memberships.find_by_user_id_and_organization_id(
            validated_input.target_user_id, organization_id
        )
        if target is None or target.left_at is not None or target.deleted_at is not None:
            return Result.fail(
                NotFoundError("OrganizationMembership", f"{validated_input.target_user_id}:{organization_id}")
            )

        if organization.owner_user_id == validated_input.target_user_id:
            return Result.fail(
                ValidationError("Organization owner role cannot be changed. Use transfer ownership instead.")
            )

        actor_membership = await persistence.organization_memberships.find_by_user_id_and_organization_id(
            actor.id, organization_id
        )
        actor_role = resolve_actor_role(organization, actor_membership, actor.id)
        if not can_assign_role(actor_role, validated_input.role_code):
            return Result.fail(
                permission_denied(
                    "Insufficient permissions to assign this role",
                    user_id=actor.id,
                    organization_id=organization_id,
                    actor_role=actor_role,
                )
            )
        return Result.ok(None)

    async def execute_business_logic(
        self, validated_input: UpdateOrganizationMemberRoleInput, context: OperationContext
    ) -> Result[OrganizationMembership, DomainError]:
        organization_id = validated_input.organization_id
        target = await self.adapters.persistence.organization_memberships.find_by_user_id_and_organization_id(
            validated_input.target_user_id, organization_id
        )
        if target is None:
            return Result.fail(
                NotFoundError("OrganizationMembership", f"{validated_input.target_user_id}:{organization_id}")
            )

        updated = target.model_copy(update={"role_code": validated_input.role_code, "updated_at": self.now()})
        audit_context = enrich_audit_context(context, "UPDATE_ORGANIZATION_MEMBER_ROLE", organization_id)
        saved = await self.run_transaction(
            lambda repos: repos.organization_memberships.update(updated, audit_context),
            "Failed to update organization member role",
        )
        if saved.is_failure:
            return Result.fail(saved.get_error())
        return Result.ok(updated)


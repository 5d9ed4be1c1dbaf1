"""Organization lifecycle use cases.

States: active -> archived <-> active (restore) -> deleted (terminal).
Ownership changes only through ``TransferOrganizationOwnership``, which
also swaps the owner and member roles on the two memberships.
"""

from __future__ import annotations

import logging

from tenantkit.core.context import OperationContext, enrich_audit_context
from tenantkit.core.errors import DomainError, NotFoundError, ValidationError
from tenantkit.core.hooks import UseCaseName
from tenantkit.core.metrics import (
    adjust_active_memberships,
    increment_counter,
    memberships_created_total,
    organizations_created_total,
)
from tenantkit.core.permissions import (
    is_active_admin,
    is_active_membership,
    permission_denied,
    resolve_actor_role,
)
from tenantkit.core.ports import RepositoryBundle
from tenantkit.core.results import Result
from tenantkit.core.use_case import BaseUseCase, find_by_id_or_fail
from tenantkit.core.validation import CustomFieldsValidator, Validator, validate_custom_fields
from tenantkit.models.membership import (
    ListOrganizationMembersInput,
    ListOrganizationMembersOutput,
    OrganizationMembership,
    OrganizationRole,
    PaginationMetadata,
)
from tenantkit.models.organization import (
    ArchiveOrganizationInput,
    CreateOrganizationInput,
    DeleteOrganizationInput,
    GetOrganizationInput,
    Organization,
    RestoreOrganizationInput,
    TransferOrganizationOwnershipInput,
    UpdateOrganizationInput,
)
from tenantkit.models.user import User

LOGGER = logging.getLogger(__name__)


class _OrganizationUseCase(BaseUseCase):
    """Shared lookups for use cases that act on one organization."""

    async def load_organization_and_actor(
        self, organization_id, principal_external_id: str
    ) -> Result[tuple[Organization, User, OrganizationMembership | None], DomainError]:
        persistence = self.adapters.persistence
        organization = await persistence.organizations.find_by_id(organization_id)
        if organization is None:
            return Result.fail(NotFoundError("Organization", organization_id))

        actor_result = await self.get_user_from_external_id(principal_external_id)
        if actor_result.is_failure:
            return Result.fail(actor_result.get_error())
        actor = actor_result.get_value()

        membership = await persistence.organization_memberships.find_by_user_id_and_organization_id(
            actor.id, organization.id
        )
        return Result.ok((organization, actor, membership))

    def build_organization_output_validator(self) -> Validator[Organization]:
        return CustomFieldsValidator(Organization, self.options.organization_custom_fields)


class CreateOrganization(_OrganizationUseCase):
    """Create an organization owned by the principal, plus its active owner membership."""

    name = UseCaseName.CREATE_ORGANIZATION
    input_schema = CreateOrganizationInput
    output_schema = Organization
    error_message = "Failed to create organization"

    def build_input_validator(self) -> Validator[CreateOrganizationInput]:
        return CustomFieldsValidator(CreateOrganizationInput, self.options.organization_custom_fields)

    def build_output_validator(self) -> Validator[Organization]:
        return self.build_organization_output_validator()

    async def execute_business_logic(
        self, validated_input: CreateOrganizationInput, context: OperationContext
    ) -> Result[Organization, DomainError]:
        owner_result = await self.get_user_from_external_id(validated_input.principal_external_id)
        if owner_result.is_failure:
            return Result.fail(owner_result.get_error())
        owner = owner_result.get_value()

        membership_fields = validate_custom_fields(
            self.options.membership_custom_fields,
            validated_input.owner_membership_custom_fields,
            prefix="owner_membership_custom_fields",
        )
        if membership_fields.is_failure:
            first = membership_fields.get_error()[0]
            return Result.fail(ValidationError(f"Owner membership validation failed: {first.message}", first.path))

        now = self.now()
        organization = Organization(
            id=self.new_id(),
            owner_user_id=owner.id,
            created_at=now,
            updated_at=now,
            **validated_input.custom_fields,
        )
        owner_membership = OrganizationMembership(
            id=self.new_id(),
            user_id=owner.id,
            username=owner.username,
            organization_id=organization.id,
            role_code=OrganizationRole.OWNER,
            joined_at=now,
            created_at=now,
            updated_at=now,
            **membership_fields.get_value(),
        )

        audit_context = enrich_audit_context(context, "CREATE_ORGANIZATION", organization.id)
        membership_audit_context = enrich_audit_context(context, "ADD_ORGANIZATION_MEMBER", organization.id)

        async def work(repos: RepositoryBundle) -> None:
            await repos.organizations.insert(organization, audit_context)
            await repos.organization_memberships.insert(owner_membership, membership_audit_context)

        saved = await self.run_transaction(work, "Failed to save organization")
        if saved.is_failure:
            return Result.fail(saved.get_error())

        increment_counter(organizations_created_total)
        increment_counter(memberships_created_total)
        adjust_active_memberships(1)
        LOGGER.info(
            "organization_created",
            extra={"organization_id": str(organization.id), "owner_user_id": str(owner.id)},
        )
        return Result.ok(organization)


class GetOrganization(_OrganizationUseCase):
    name = UseCaseName.GET_ORGANIZATION
    input_schema = GetOrganizationInput
    output_schema = Organization
    error_message = "Failed to get organization"

    def build_output_validator(self) -> Validator[Organization]:
        return self.build_organization_output_validator()

    async def execute_business_logic(
        self, validated_input: GetOrganizationInput, context: OperationContext
    ) -> Result[Organization, DomainError]:
        loaded = await self.load_organization_and_actor(
            validated_input.organization_id, validated_input.principal_external_id
        )
        if loaded.is_failure:
            return Result.fail(loaded.get_error())
        organization, actor, membership = loaded.get_value()

        if organization.owner_user_id != actor.id and not is_active_membership(membership):
            return Result.fail(
                permission_denied(
                    "Only organization owner or active organization members can access organization details",
                    user_id=actor.id,
                    organization_id=organization.id,
                )
            )
        return Result.ok(organization)


class UpdateOrganization(_OrganizationUseCase):
    """Merge the supplied custom fields into the organization."""

    name = UseCaseName.UPDATE_ORGANIZATION
    input_schema = UpdateOrganizationInput
    output_schema = Organization
    error_message = "Failed to update organization"

    def build_output_validator(self) -> Validator[Organization]:
        return self.build_organization_output_validator()

    async def execute_business_logic(
        self, validated_input: UpdateOrganizationInput, context: OperationContext
    ) -> Result[Organization, DomainError]:
        persistence = self.adapters.persistence
        found = await find_by_id_or_fail(persistence.organizations, validated_input.organization_id, "Organization")
        if found.is_failure:
            return Result.fail(found.get_error())
        organization = found.get_value()

        actor_result = await self.get_user_from_external_id(validated_input.principal_external_id)
        if actor_result.is_failure:
            return Result.fail(actor_result.get_error())
        actor = actor_result.get_value()

        if organization.deleted_at is not None:
            return Result.fail(ValidationError("Cannot update a deleted organization", "organization_id"))

        membership = await persistence.organization_memberships.find_by_user_id_and_organization_id(
            actor.id, organization.id
        )
        if organization.owner_user_id != actor.id and not is_active_admin(membership):
            return Result.fail(
                permission_denied(
                    "Only organization owner or admin members can update organization",
                    user_id=actor.id,
                    organization_id=organization.id,
                    actor_role=resolve_actor_role(organization, membership, actor.id),
                )
            )

        # validated after merging so partial updates pass
        merged = validate_custom_fields(
            self.options.organization_custom_fields,
            {**organization.custom_fields, **validated_input.custom_fields},
        )
        if merged.is_failure:
            first = merged.get_error()[0]
            return Result.fail(ValidationError(first.message, first.path))
        updated = organization.model_copy(update={**merged.get_value(), "updated_at": self.now()})
        audit_context = enrich_audit_context(context, "UPDATE_ORGANIZATION", organization.id)

        saved = await self.run_transaction(
            lambda repos: repos.organizations.update(updated, audit_context),
            "Failed to update organization",
        )
        if saved.is_failure:
            return Result.fail(saved.get_error())
        return Result.ok(updated)


class ListOrganizationMembers(_OrganizationUseCase):
    """Page through an organization's memberships with user details.

    Owners and admins see active, pending and removed memberships unless they
    ask for a subset; plain members only ever see active members.
    """

    name = UseCaseName.LIST_ORGANIZATION_MEMBERS
    input_schema = ListOrganizationMembersInput
    output_schema = ListOrganizationMembersOutput
    error_message = "Failed to list organization members"

    async def execute_business_logic(
        self, validated_input: ListOrganizationMembersInput, context: OperationContext
    ) -> Result[ListOrganizationMembersOutput, DomainError]:
        loaded = await self.load_organization_and_actor(
            validated_input.organization_id, validated_input.principal_external_id
        )
        if loaded.is_failure:
            return Result.fail(loaded.get_error())
        organization, actor, membership = loaded.get_value()

        is_owner = organization.owner_user_id == actor.id
        if not is_owner and not is_active_membership(membership):
            return Result.fail(
                permission_denied(
                    "Only organization members can view organization members",
                    user_id=actor.id,
                    organization_id=organization.id,
                )
            )

        options = validated_input.options
        if is_owner or is_active_admin(membership):
            if not (options.include_active or options.include_pending or options.include_removed):
                options = options.model_copy(
                    update={"include_active": True, "include_pending": True, "include_removed": True}
                )
        else:
            options = options.model_copy(
                update={"include_active": True, "include_pending": False, "include_removed": False}
            )

        page = await self.adapters.persistence.organization_memberships.find_by_organization_with_user_info_paginated(
            organization.id, options
        )
        return Result.ok(
            ListOrganizationMembersOutput(
                items=page.items,
                pagination=PaginationMetadata(
                    total=page.total,
                    page=page.page,
                    page_size=page.page_size,
                    total_pages=page.total_pages,
                ),
            )
        )


class ArchiveOrganization(_OrganizationUseCase):
    name = UseCaseName.ARCHIVE_ORGANIZATION
    input_schema = ArchiveOrganizationInput
    output_schema = Organization
    error_message = "Failed to archive organization"

    def build_output_validator(self) -> Validator[Organization]:
        return self.build_organization_output_validator()

    async def authorize(self, validated_input: ArchiveOrganizationInput, context: OperationContext) -> Result[None, DomainError]:
        loaded = await self.load_organization_and_actor(
            validated_input.organization_id, validated_input.principal_external_id
        )
        if loaded.is_failure:
            return Result.fail(loaded.get_error())
        organization, actor, membership = loaded.get_value()

        if organization.owner_user_id != actor.id and not is_active_admin(membership):
            return Result.fail(
                permission_denied(
                    "Only organization owners and admins can archive the organization",
                    user_id=actor.id,
                    organization_id=organization.id,
                    actor_role=resolve_actor_role(organization, membership, actor.id),
                )
            )
        return Result.ok(None)

    async def execute_business_logic(
        self, validated_input: ArchiveOrganizationInput, context: OperationContext
    ) -> Result[Organization, DomainError]:
        found = await find_by_id_or_fail(
            self.adapters.persistence.organizations, validated_input.organization_id, "Organization"
        )
        if found.is_failure:
            return Result.fail(found.get_error())
        organization = found.get_value()

        if organization.archived_at is not None:
            return Result.fail(ValidationError("Organization is already archived", "organization_id"))
        if organization.deleted_at is not None:
            return Result.fail(ValidationError("Cannot archive a deleted organization", "organization_id"))

        now = self.now()
        archived = organization.model_copy(update={"archived_at": now, "updated_at": now})
        audit_context = enrich_audit_context(context, "ARCHIVE_ORGANIZATION", organization.id)

        saved = await self.run_transaction(
            lambda repos: repos.organizations.update(archived, audit_context),
            "Failed to archive organization",
        )
        if saved.is_failure:
            return Result.fail(saved.get_error())
        return Result.ok(archived)


class RestoreOrganization(_OrganizationUseCase):
    """Bring an archived organization back; only its owner may do so.

    The actor comes from ``context.actor_user_id`` or, when that is unset,
    from ``context.external_id``.
    """

    name = UseCaseName.RESTORE_ORGANIZATION
    input_schema = RestoreOrganizationInput
    output_schema = Organization
    error_message = "Failed to restore organization"

    def build_output_validator(self) -> Validator[Organization]:
        return self.build_organization_output_validator()

    async def _resolve_actor_id(self, context: OperationContext):
        if context.actor_user_id is not None:
            return context.actor_user_id
        if context.external_id:
            actor = await self.adapters.persistence.users.find_by_external_id(context.external_id)
            if actor is not None:
                return actor.id
        return None

    async def execute_business_logic(
        self, validated_input: RestoreOrganizationInput, context: OperationContext
    ) -> Result[Organization, DomainError]:
        persistence = self.adapters.persistence
        found = await find_by_id_or_fail(persistence.organizations, validated_input.organization_id, "Organization")
        if found.is_failure:
            return Result.fail(found.get_error())
        organization = found.get_value()

        if organization.archived_at is None:
            return Result.fail(ValidationError("Organization is not archived", "organization_id"))
        if organization.deleted_at is not None:
            return Result.fail(
                ValidationError("Deleted organizations cannot be restored through this use case", "organization_id")
            )

        actor_id = await self._resolve_actor_id(context)
        if actor_id is None or organization.owner_user_id != actor_id:
            return Result.fail(
                ValidationError("Only the organization owner can restore the organization", "actor_user_id")
            )

        owner = await persistence.users.find_by_id(organization.owner_user_id)
        if owner is None or owner.deleted_at is not None:
            return Result.fail(
                ValidationError("Cannot restore organization: owner user is deleted", "owner_user_id")
            )

        restored = organization.model_copy(update={"archived_at": None, "updated_at": self.now()})
        audit_context = enrich_audit_context(context, "RESTORE_ORGANIZATION", organization.id)

        saved = await self.run_transaction(
            lambda repos: repos.organizations.update(restored, audit_context),
            "Failed to restore organization",
        )
        if saved.is_failure:
            return Result.fail(saved.get_error())
        return Result.ok(restored)


class DeleteOrganization(_OrganizationUseCase):
    """Soft delete an organization; terminal."""

    name = UseCaseName.DELETE_ORGANIZATION
    input_schema = DeleteOrganizationInput
    output_schema = Organization
    error_message = "Failed to delete organization"

    def build_output_validator(self) -> Validator[Organization]:
        return self.build_organization_output_validator()

    async def authorize(self, validated_input: DeleteOrganizationInput, context: OperationContext) -> Result[None, DomainError]:
        loaded = await self.load_organization_and_actor(
            validated_input.organization_id, validated_input.principal_external_id
        )
        if loaded.is_failure:
            return Result.fail(loaded.get_error())
        organization, actor, membership = loaded.get_value()

        if organization.owner_user_id != actor.id:
            return Result.fail(
                permission_denied(
                    "Only the organization owner can delete the organization",
                    user_id=actor.id,
                    organization_id=organization.id,
                    actor_role=resolve_actor_role(organization, membership, actor.id),
                )
            )
        return Result.ok(None)

    async def execute_business_logic(
        self, validated_input: DeleteOrganizationInput, context: OperationContext
    ) -> Result[Organization, DomainError]:
        found = await find_by_id_or_fail(
            self.adapters.persistence.organizations, validated_input.organization_id, "Organization"
        )
        if found.is_failure:
            return Result.fail(found.get_error())
        organization = found.get_value()

        if organization.deleted_at is not None:
            return Result.fail(ValidationError("Organization is already deleted", "organization_id"))

        now = self.now()
        deleted = organization.model_copy(update={"deleted_at": now, "updated_at": now})
        audit_context = enrich_audit_context(context, "DELETE_ORGANIZATION", organization.id)

        saved = await self.run_transaction(
            lambda repos: repos.organizations.update(deleted, audit_context),
            "Failed to delete organization",
        )
        if saved.is_failure:
            return Result.fail(saved.get_error())

        LOGGER.info("organization_deleted", extra={"organization_id": str(organization.id)})
        return Result.ok(deleted)


class TransferOrganizationOwnership(_OrganizationUseCase):
    """Hand an organization to another active member.

    The organization's ``owner_user_id``, the old owner's role (now member)
    and the new owner's role (now owner) are written in one transaction.
    """

    name = UseCaseName.TRANSFER_ORGANIZATION_OWNERSHIP
    input_schema = TransferOrganizationOwnershipInput
    output_schema = Organization
    error_message = "Failed to transfer organization ownership"

    def build_output_validator(self) -> Validator[Organization]:
        return self.build_organization_output_validator()

    async def _active_membership(self, user_id, organization_id) -> OrganizationMembership | None:
        memberships = await self.adapters.persistence.organization_memberships.find_by_user(user_id)
        for membership in memberships:
            if membership.organization_id == organization_id and is_active_membership(membership):
                return membership
        return None

    async def execute_business_logic(
        self, validated_input: TransferOrganizationOwnershipInput, context: OperationContext
    ) -> Result[Organization, DomainError]:
        persistence = self.adapters.persistence
        found = await find_by_id_or_fail(persistence.organizations, validated_input.organization_id, "Organization")
        if found.is_failure:
            return Result.fail(found.get_error())
        organization = found.get_value()

        if organization.deleted_at is not None:
            return Result.fail(
                ValidationError("Cannot transfer ownership of a deleted organization", "organization_id")
            )
        if organization.archived_at is not None:
            return Result.fail(
                ValidationError("Cannot transfer ownership of an archived organization", "organization_id")
            )

        current_owner_found = await find_by_id_or_fail(persistence.users, organization.owner_user_id, "User")
        if current_owner_found.is_failure:
            return Result.fail(current_owner_found.get_error())
        current_owner = current_owner_found.get_value()
        if current_owner.deleted_at is not None:
            return Result.fail(ValidationError("Current owner user is deleted", "owner_user_id"))

        if current_owner.external_id != context.external_id:
            return Result.fail(
                ValidationError("Only the current organization owner can transfer ownership", "external_id")
            )

        if validated_input.new_owner_id == organization.owner_user_id:
            return Result.fail(
                ValidationError("New owner must be different from current owner", "new_owner_id")
            )

        new_owner_found = await find_by_id_or_fail(persistence.users, validated_input.new_owner_id, "User")
        if new_owner_found.is_failure:
            return Result.fail(new_owner_found.get_error())
        new_owner = new_owner_found.get_value()
        if new_owner.deleted_at is not None:
            return Result.fail(ValidationError("New owner user is deleted", "new_owner_id"))

        current_owner_membership = await self._active_membership(current_owner.id, organization.id)
        if current_owner_membership is None:
            return Result.fail(
                ValidationError(
                    "Current owner does not have an active membership in the organization",
                    "owner_user_id",
                )
            )
        new_owner_membership = await self._active_membership(new_owner.id, organization.id)
        if new_owner_membership is None:
            return Result.fail(
                ValidationError(
                    "New owner does not have an active membership in the organization",
                    "new_owner_id",
                )
            )

        now = self.now()
        transferred = organization.model_copy(update={"owner_user_id": new_owner.id, "updated_at": now})
        demoted = current_owner_membership.model_copy(update={"role_code": OrganizationRole.MEMBER, "updated_at": now})
        promoted = new_owner_membership.model_copy(update={"role_code": OrganizationRole.OWNER, "updated_at": now})
        audit_context = enrich_audit_context(
            context,
            "TRANSFER_ORGANIZATION_OWNERSHIP",
            organization.id,
            {"previous_owner_id": str(current_owner.id), "new_owner_id": str(new_owner.id)},
        )

        async def work(repos: RepositoryBundle) -> None:
            await repos.organizations.update(transferred, audit_context)
            await repos.organization_memberships.update(demoted, audit_context)
            await repos.organization_memberships.update(promoted, audit_context)

        saved = await self.run_transaction(work, "Failed to transfer organization ownership")
        if saved.is_failure:
            return Result.fail(saved.get_error())

        LOGGER.info(
            "organization_ownership_transferred",
            extra={
                "organization_id": str(organization.id),
                "previous_owner_id": str(current_owner.id),
                "new_owner_id": str(new_owner.id),
            },
        )
        return Result.ok(transferred)

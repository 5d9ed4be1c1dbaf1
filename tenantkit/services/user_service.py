"""User registration, profile and deletion use cases."""

from __future__ import annotations

import logging

from tenantkit.core.background_tasks import fire_and_forget, link_pending_memberships_task
from tenantkit.core.context import OperationContext, enrich_audit_context
from tenantkit.core.errors import ConflictError, DomainError, ValidationError
from tenantkit.core.hooks import UseCaseName
from tenantkit.core.metrics import adjust_active_memberships, increment_counter, users_created_total
from tenantkit.core.permissions import is_active_membership
from tenantkit.core.ports import RepositoryBundle
from tenantkit.core.results import Result
from tenantkit.core.use_case import BaseUseCase
from tenantkit.core.validation import CustomFieldsValidator, ListValidator, Validator, validate_custom_fields
from tenantkit.models.organization import Organization
from tenantkit.models.user import (
    CreateUserInput,
    DeleteUserInput,
    GetUserInput,
    ListUserOrganizationsInput,
    UpdateUserInput,
    User,
)

LOGGER = logging.getLogger(__name__)


class _UserUseCase(BaseUseCase):
    def build_output_validator(self) -> Validator[User]:
        return CustomFieldsValidator(User, self.options.user_custom_fields)


class CreateUser(_UserUseCase):
    """Register a user.

    ``external_id`` is the identity provider's id for the principal and
    defaults to the generated user id. When linking is enabled, pending
    invitations addressed to the new username are attached to the user by a
    detached task after the insert commits.
    """

    name = UseCaseName.CREATE_USER
    input_schema = CreateUserInput
    output_schema = User
    error_message = "Failed to create user"

    def build_input_validator(self) -> Validator[CreateUserInput]:
        return CustomFieldsValidator(CreateUserInput, self.options.user_custom_fields)

    async def execute_business_logic(
        self, validated_input: CreateUserInput, context: OperationContext
    ) -> Result[User, DomainError]:
        users = self.adapters.persistence.users

        if validated_input.external_id is not None:
            if await users.find_by_external_id(validated_input.external_id) is not None:
                return Result.fail(
                    ConflictError("User", validated_input.external_id, {"reason": "External ID already registered"})
                )

        if await users.find_by_username(validated_input.username) is not None:
            return Result.fail(
                ConflictError("User", validated_input.username, {"reason": "Username already registered"})
            )

        user_id = validated_input.id or self.new_id()
        now = self.now()
        user = User(
            id=user_id,
            external_id=validated_input.external_id or str(user_id),
            username=validated_input.username,
            created_at=now,
            updated_at=now,
            **validated_input.custom_fields,
        )
        audit_context = enrich_audit_context(context, "CREATE_USER")

        saved = await self.run_transaction(
            lambda repos: repos.users.insert(user, audit_context),
            "Failed to save user",
        )
        if saved.is_failure:
            return Result.fail(saved.get_error())

        increment_counter(users_created_total)
        LOGGER.info("user_created", extra={"user_id": str(user.id), "username": user.username})

        if self.options.link_pending_memberships:
            uow = self.adapters.persistence.uow
            fire_and_forget(
                lambda: link_pending_memberships_task(uow, user.username, user.id, audit_context),
                name="link_pending_memberships",
            )
        return Result.ok(user)


class GetUser(_UserUseCase):
    name = UseCaseName.GET_USER
    input_schema = GetUserInput
    output_schema = User
    error_message = "Failed to get user"

    async def execute_business_logic(
        self, validated_input: GetUserInput, context: OperationContext
    ) -> Result[User, DomainError]:
        return await self.get_user_from_external_id(validated_input.principal_external_id)


class UpdateUser(_UserUseCase):
    name = UseCaseName.UPDATE_USER
    input_schema = UpdateUserInput
    output_schema = User
    error_message = "Failed to update user"

    async def execute_business_logic(
        self, validated_input: UpdateUserInput, context: OperationContext
    ) -> Result[User, DomainError]:
        found = await self.get_user_from_external_id(validated_input.principal_external_id)
        if found.is_failure:
            return Result.fail(found.get_error())
        user = found.get_value()

        changes = {}
        if validated_input.username is not None and validated_input.username != user.username:
            taken = await self.adapters.persistence.users.find_by_username(validated_input.username)
            if taken is not None and taken.id != user.id:
                return Result.fail(
                    ConflictError("User", validated_input.username, {"reason": "Username already registered"})
                )
            changes["username"] = validated_input.username

        merged = validate_custom_fields(
            self.options.user_custom_fields,
            {**user.custom_fields, **validated_input.custom_fields},
        )
        if merged.is_failure:
            first = merged.get_error()[0]
            return Result.fail(ValidationError(first.message, first.path))

        updated = user.model_copy(update={**merged.get_value(), **changes, "updated_at": self.now()})
        audit_context = enrich_audit_context(context, "UPDATE_USER_PROFILE")

        saved = await self.run_transaction(
            lambda repos: repos.users.update(updated, audit_context),
            "Failed to update user",
        )
        if saved.is_failure:
            return Result.fail(saved.get_error())
        return Result.ok(updated)


class DeleteUser(_UserUseCase):
    """Soft delete a user together with what hangs off it.

    Organizations the user owns are soft deleted; the user's memberships in
    other organizations are closed (``left_at`` and ``deleted_at`` set). All
    writes share one transaction.
    """

    name = UseCaseName.DELETE_USER
    input_schema = DeleteUserInput
    output_schema = User
    error_message = "Failed to delete user"

    async def execute_business_logic(
        self, validated_input: DeleteUserInput, context: OperationContext
    ) -> Result[User, DomainError]:
        found = await self.get_user_from_external_id(validated_input.principal_external_id)
        if found.is_failure:
            return Result.fail(found.get_error())
        user = found.get_value()

        if user.deleted_at is not None:
            return Result.fail(ValidationError("User is already deleted", "user_id"))

        now = self.now()
        deleted_user = user.model_copy(update={"deleted_at": now, "updated_at": now})
        audit_context = enrich_audit_context(context, "DELETE_USER")

        async def work(repos: RepositoryBundle) -> int:
            await repos.users.update(deleted_user, audit_context)

            owned = await repos.organizations.find_by_owner(user.id)
            for organization in owned:
                if organization.deleted_at is None:
                    await repos.organizations.update(
                        organization.model_copy(update={"deleted_at": now, "updated_at": now}),
                        audit_context,
                    )

            owned_ids = {organization.id for organization in owned}
            closed = 0
            for membership in await repos.organization_memberships.find_by_user(user.id):
                if membership.organization_id in owned_ids:
                    continue
                if membership.deleted_at is None and membership.left_at is None:
                    if is_active_membership(membership):
                        closed += 1
                    await repos.organization_memberships.update(
                        membership.model_copy(update={"left_at": now, "deleted_at": now, "updated_at": now}),
                        audit_context,
                    )
            return closed

        saved = await self.run_transaction(work, "Failed to delete user")
        if saved.is_failure:
            return Result.fail(saved.get_error())

        adjust_active_memberships(-saved.get_value())
        LOGGER.info("user_deleted", extra={"user_id": str(user.id), "closed_memberships": saved.get_value()})
        return Result.ok(deleted_user)


class ListUserOrganizations(BaseUseCase):
    """Organizations the user belongs to through an active membership or owns."""

    name = UseCaseName.LIST_USER_ORGANIZATIONS
    input_schema = ListUserOrganizationsInput
    output_schema = list[Organization]
    error_message = "Failed to list user organizations"

    def build_output_validator(self) -> Validator[list[Organization]]:
        return ListValidator(CustomFieldsValidator(Organization, self.options.organization_custom_fields))

    async def execute_business_logic(
        self, validated_input: ListUserOrganizationsInput, context: OperationContext
    ) -> Result[list[Organization], DomainError]:
        found = await self.get_user_from_external_id(validated_input.principal_external_id)
        if found.is_failure:
            return Result.fail(found.get_error())
        user = found.get_value()

        persistence = self.adapters.persistence
        memberships = await persistence.organization_memberships.find_by_user(user.id)
        member_of = await persistence.organizations.find_by_ids(
            [membership.organization_id for membership in memberships if is_active_membership(membership)]
        )

        organizations = [organization for organization in member_of if organization.deleted_at is None]
        seen = {organization.id for organization in organizations}
        for organization in await persistence.organizations.find_by_owner(user.id):
            if organization.id not in seen:
                seen.add(organization.id)
                organizations.append(organization)
        return Result.ok(organizations)

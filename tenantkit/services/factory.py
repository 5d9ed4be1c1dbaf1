"""Wire every use case to one set of adapters and options."""

from __future__ import annotations

from dataclasses import dataclass

from tenantkit.core.options import ToolkitOptions
from tenantkit.core.ports import Adapters
from tenantkit.services.membership_service import (
    AcceptOrganizationInvitation,
    AddOrganizationMember,
    LeaveOrganization,
    RemoveOrganizationMember,
    UpdateOrganizationMemberRole,
)
from tenantkit.services.organization_service import (
    ArchiveOrganization,
    CreateOrganization,
    DeleteOrganization,
    GetOrganization,
    ListOrganizationMembers,
    RestoreOrganization,
    TransferOrganizationOwnership,
    UpdateOrganization,
)
from tenantkit.services.user_service import (
    CreateUser,
    DeleteUser,
    GetUser,
    ListUserOrganizations,
    UpdateUser,
)


@dataclass(frozen=True)
class UseCases:
    create_user: CreateUser
    get_user: GetUser
    update_user: UpdateUser
    delete_user: DeleteUser
    list_user_organizations: ListUserOrganizations
    create_organization: CreateOrganization
    get_organization: GetOrganization
    update_organization: UpdateOrganization
    list_organization_members: ListOrganizationMembers
    archive_organization: ArchiveOrganization
    restore_organization: RestoreOrganization
    delete_organization: DeleteOrganization
    transfer_organization_ownership: TransferOrganizationOwnership
    add_organization_member: AddOrganizationMember
    accept_organization_invitation: AcceptOrganizationInvitation
    leave_organization: LeaveOrganization
    remove_organization_member: RemoveOrganizationMember
    update_organization_member_role: UpdateOrganizationMemberRole


def build_use_cases(adapters: Adapters, options: ToolkitOptions | None = None) -> UseCases:
    """Instantiate every use case; hooks are looked up in ``options.hooks`` once, here."""
    options = options or ToolkitOptions()
    return UseCases(
        create_user=CreateUser(adapters, options),
        get_user=GetUser(adapters, options),
        update_user=UpdateUser(adapters, options),
        delete_user=DeleteUser(adapters, options),
        list_user_organizations=ListUserOrganizations(adapters, options),
        create_organization=CreateOrganization(adapters, options),
        get_organization=GetOrganization(adapters, options),
        update_organization=UpdateOrganization(adapters, options),
        list_organization_members=ListOrganizationMembers(adapters, options),
        archive_organization=ArchiveOrganization(adapters, options),
        restore_organization=RestoreOrganization(adapters, options),
        delete_organization=DeleteOrganization(adapters, options),
        transfer_organization_ownership=TransferOrganizationOwnership(adapters, options),
        add_organization_member=AddOrganizationMember(adapters, options),
        accept_organization_invitation=AcceptOrganizationInvitation(adapters, options),
        leave_organization=LeaveOrganization(adapters, options),
        remove_organization_member=RemoveOrganizationMember(adapters, options),
        update_organization_member_role=UpdateOrganizationMemberRole(adapters, options),
    )

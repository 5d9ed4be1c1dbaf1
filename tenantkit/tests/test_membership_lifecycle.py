"""Tests for the organization membership lifecycle.

Tests cover:
- Invitations for registered and unregistered usernames
- Accepting invitations and the order of rejection reasons
- Leaving, removing and reactivating memberships
- Role changes and the owner/admin authorization rules
"""

from datetime import timedelta
from uuid import uuid4

import pytest

from tenantkit.core.background_tasks import drain_background_tasks
from tenantkit.core.context import OperationContext
from tenantkit.core.permissions import is_active_membership
from tenantkit.models.membership import OrganizationMembership, OrganizationRole


def ctx(external_id: str) -> OperationContext:
    return OperationContext(request_id="req-membership", external_id=external_id)


def invite_payload(actor, organization_id, username: str, role: OrganizationRole = OrganizationRole.MEMBER) -> dict:
    return {
        "principal_external_id": actor.external_id,
        "organization_id": organization_id,
        "username": username,
        "role_code": role,
    }


class TestAddOrganizationMember:
    """Tests for AddOrganizationMember."""

    @pytest.mark.asyncio
    async def test_invites_registered_user_with_user_id(self, use_cases, org_world, create_user, clock) -> None:
        """A registered username is invited with its user id set."""
        newcomer = await create_user("newcomer")

        result = await use_cases.add_organization_member.execute(
            invite_payload(org_world.owner, org_world.organization.id, "newcomer"),
            ctx(org_world.owner.external_id),
        )

        membership = result.get_value()
        assert membership.user_id == newcomer.id
        assert membership.invited_at == clock.now()
        assert membership.joined_at is None
        assert not is_active_membership(membership)

    @pytest.mark.asyncio
    async def test_invites_unregistered_username_without_user_id(self, use_cases, org_world) -> None:
        """An unknown username is invited by username only."""
        result = await use_cases.add_organization_member.execute(
            invite_payload(org_world.owner, org_world.organization.id, "u@x.com"),
            ctx(org_world.owner.external_id),
        )

        membership = result.get_value()
        assert membership.user_id is None
        assert membership.username == "u@x.com"

    @pytest.mark.asyncio
    async def test_owner_can_invite_admin_but_admin_cannot(self, use_cases, org_world) -> None:
        """Only the owner may invite with the admin role."""
        by_owner = await use_cases.add_organization_member.execute(
            invite_payload(org_world.owner, org_world.organization.id, "second-admin", OrganizationRole.ADMIN),
            ctx(org_world.owner.external_id),
        )
        by_admin = await use_cases.add_organization_member.execute(
            invite_payload(org_world.admin, org_world.organization.id, "third-admin", OrganizationRole.ADMIN),
            ctx(org_world.admin.external_id),
        )

        assert by_owner.is_success
        error = by_admin.get_error()
        assert error.code == "UNAUTHORIZED"
        assert "Only organization owners and admins can add members" in error.message

    @pytest.mark.asyncio
    async def test_admin_can_invite_member(self, use_cases, org_world) -> None:
        """Active admins may invite members."""
        result = await use_cases.add_organization_member.execute(
            invite_payload(org_world.admin, org_world.organization.id, "invited-by-admin"),
            ctx(org_world.admin.external_id),
        )

        assert result.is_success

    @pytest.mark.asyncio
    async def test_plain_member_cannot_invite(self, use_cases, org_world) -> None:
        """Members have no invite rights."""
        result = await use_cases.add_organization_member.execute(
            invite_payload(org_world.member, org_world.organization.id, "someone"),
            ctx(org_world.member.external_id),
        )

        assert result.get_error().code == "UNAUTHORIZED"

    @pytest.mark.asyncio
    async def test_active_member_conflict(self, use_cases, org_world) -> None:
        """Inviting an active member is a conflict."""
        result = await use_cases.add_organization_member.execute(
            invite_payload(org_world.owner, org_world.organization.id, org_world.member.username),
            ctx(org_world.owner.external_id),
        )

        error = result.get_error()
        assert error.code == "CONFLICT"
        assert error.details["reason"] == "User is already a member of this organization"

    @pytest.mark.asyncio
    async def test_pending_username_conflict(self, use_cases, org_world) -> None:
        """A second invitation to a pending username is a conflict."""
        payload = invite_payload(org_world.owner, org_world.organization.id, "pending@x.com")
        first = await use_cases.add_organization_member.execute(payload, ctx(org_world.owner.external_id))
        second = await use_cases.add_organization_member.execute(payload, ctx(org_world.owner.external_id))

        assert first.is_success
        assert second.get_error().code == "CONFLICT"

    @pytest.mark.asyncio
    async def test_unknown_organization(self, use_cases, org_world) -> None:
        """Inviting into a missing organization is not found."""
        result = await use_cases.add_organization_member.execute(
            invite_payload(org_world.owner, uuid4(), "someone"),
            ctx(org_world.owner.external_id),
        )

        assert result.get_error().code == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_reactivates_left_membership(self, use_cases, org_world, store, clock) -> None:
        """Re-inviting a member who left reuses the same row."""
        before = await use_cases.leave_organization.execute(
            {"principal_external_id": org_world.member.external_id, "organization_id": org_world.organization.id},
            ctx(org_world.member.external_id),
        )
        left = before.get_value()
        clock.advance(timedelta(hours=1))

        result = await use_cases.add_organization_member.execute(
            invite_payload(org_world.owner, org_world.organization.id, org_world.member.username, OrganizationRole.ADMIN),
            ctx(org_world.owner.external_id),
        )

        reactivated = result.get_value()
        assert reactivated.id == left.id
        assert reactivated.left_at is None
        assert reactivated.joined_at is None
        assert reactivated.invited_at == clock.now()
        assert reactivated.role_code == OrganizationRole.ADMIN
        rows = [m for m in store.memberships.values() if m.user_id == org_world.member.id]
        assert len(rows) == 1


class TestAcceptOrganizationInvitation:
    """Tests for AcceptOrganizationInvitation."""

    @pytest.mark.asyncio
    async def test_invitation_before_registration(self, use_cases, org_world, create_user, clock) -> None:
        """An invitation sent before registration can be accepted after it."""
        invited = await use_cases.add_organization_member.execute(
            invite_payload(org_world.owner, org_world.organization.id, "u@x.com"),
            ctx(org_world.owner.external_id),
        )
        assert invited.get_value().user_id is None

        user = await create_user("u@x.com")
        result = await use_cases.accept_organization_invitation.execute(
            {"principal_external_id": user.external_id, "organization_id": org_world.organization.id, "username": "u@x.com"},
            ctx(user.external_id),
        )

        membership = result.get_value()
        assert membership.user_id == user.id
        assert membership.joined_at == clock.now()
        assert membership.left_at is None
        assert membership.deleted_at is None

    @pytest.mark.asyncio
    async def test_registration_links_pending_invitations(self, use_cases, org_world, create_user, adapters) -> None:
        """Registering links pending invitations to the new user."""
        await use_cases.add_organization_member.execute(
            invite_payload(org_world.owner, org_world.organization.id, "late@x.com"),
            ctx(org_world.owner.external_id),
        )

        user = await create_user("late@x.com")
        await drain_background_tasks()

        linked = await adapters.persistence.organization_memberships.find_by_username_and_organization_id(
            "late@x.com", org_world.organization.id
        )
        assert linked.user_id == user.id

    @pytest.mark.asyncio
    async def test_username_mismatch(self, use_cases, org_world, create_user) -> None:
        """A user cannot accept an invitation for another username."""
        user = await create_user("mallory")

        result = await use_cases.accept_organization_invitation.execute(
            {"principal_external_id": user.external_id, "organization_id": org_world.organization.id, "username": "victim"},
            ctx(user.external_id),
        )

        error = result.get_error()
        assert error.code == "VALIDATION_ERROR"
        assert "Username mismatch" in error.message

    @pytest.mark.asyncio
    async def test_already_accepted(self, use_cases, org_world) -> None:
        """Accepting an active membership fails."""
        result = await use_cases.accept_organization_invitation.execute(
            {
                "principal_external_id": org_world.member.external_id,
                "organization_id": org_world.organization.id,
                "username": org_world.member.username,
            },
            ctx(org_world.member.external_id),
        )

        assert result.get_error().message == "Invitation has already been accepted"

    @pytest.mark.asyncio
    async def test_membership_without_invitation(self, use_cases, org_world) -> None:
        """The owner's membership was never an invitation, so there is nothing to accept."""
        result = await use_cases.accept_organization_invitation.execute(
            {
                "principal_external_id": org_world.owner.external_id,
                "organization_id": org_world.organization.id,
                "username": org_world.owner.username,
            },
            ctx(org_world.owner.external_id),
        )

        error = result.get_error()
        assert error.code == "VALIDATION_ERROR"
        assert "No pending invitation" in error.message

    @pytest.mark.asyncio
    async def test_previously_left_is_checked_before_revoked(self, use_cases, org_world, adapters, clock) -> None:
        """A left and deleted row reports the leave first."""
        repo = adapters.persistence.organization_memberships
        membership = await repo.find_by_user_id_and_organization_id(org_world.member.id, org_world.organization.id)
        await repo.update(membership.model_copy(update={"left_at": clock.now(), "deleted_at": clock.now()}))

        result = await use_cases.accept_organization_invitation.execute(
            {
                "principal_external_id": org_world.member.external_id,
                "organization_id": org_world.organization.id,
                "username": org_world.member.username,
            },
            ctx(org_world.member.external_id),
        )

        assert "previously left" in result.get_error().message

    @pytest.mark.asyncio
    async def test_revoked_invitation(self, use_cases, org_world, adapters, clock) -> None:
        """A deleted invitation cannot be accepted."""
        invited = await use_cases.add_organization_member.execute(
            invite_payload(org_world.owner, org_world.organization.id, "revoked@x.com"),
            ctx(org_world.owner.external_id),
        )
        repo = adapters.persistence.organization_memberships
        await repo.update(invited.get_value().model_copy(update={"deleted_at": clock.now()}))

        user_result = await use_cases.create_user.execute(
            {"username": "revoked@x.com", "external_id": "ext-revoked"}, ctx("ext-revoked")
        )
        assert user_result.is_success

        result = await use_cases.accept_organization_invitation.execute(
            {"principal_external_id": "ext-revoked", "organization_id": org_world.organization.id, "username": "revoked@x.com"},
            ctx("ext-revoked"),
        )

        assert "revoked" in result.get_error().message

    @pytest.mark.asyncio
    async def test_missing_invitation(self, use_cases, org_world, create_user) -> None:
        """No row for the username is not found."""
        user = await create_user("uninvited")

        result = await use_cases.accept_organization_invitation.execute(
            {"principal_external_id": user.external_id, "organization_id": org_world.organization.id, "username": "uninvited"},
            ctx(user.external_id),
        )

        assert result.get_error().code == "NOT_FOUND"


class TestLeaveOrganization:
    """Tests for LeaveOrganization."""

    @pytest.mark.asyncio
    async def test_member_leaves(self, use_cases, org_world, clock) -> None:
        """Leaving stamps left_at."""
        result = await use_cases.leave_organization.execute(
            {"principal_external_id": org_world.member.external_id, "organization_id": org_world.organization.id},
            ctx(org_world.member.external_id),
        )

        membership = result.get_value()
        assert membership.left_at == clock.now()
        assert membership.deleted_at is None
        assert not is_active_membership(membership)

    @pytest.mark.asyncio
    async def test_owner_cannot_leave(self, use_cases, org_world) -> None:
        """The owner must transfer ownership before leaving."""
        result = await use_cases.leave_organization.execute(
            {"principal_external_id": org_world.owner.external_id, "organization_id": org_world.organization.id},
            ctx(org_world.owner.external_id),
        )

        error = result.get_error()
        assert error.code == "VALIDATION_ERROR"
        assert "owner cannot leave" in error.message
        assert "Transfer ownership first" in error.message

    @pytest.mark.asyncio
    async def test_leaving_twice_fails(self, use_cases, org_world) -> None:
        """A second leave finds no active membership."""
        payload = {"principal_external_id": org_world.member.external_id, "organization_id": org_world.organization.id}
        await use_cases.leave_organization.execute(payload, ctx(org_world.member.external_id))

        result = await use_cases.leave_organization.execute(payload, ctx(org_world.member.external_id))

        assert result.get_error().code == "NOT_FOUND"


class TestRemoveOrganizationMember:
    """Tests for RemoveOrganizationMember."""

    @pytest.mark.asyncio
    async def test_admin_cannot_remove_admin(self, use_cases, org_world, create_user, add_active_member) -> None:
        """Admins may only remove members."""
        other_admin = await create_user("other-admin")
        await add_active_member(org_world.organization.id, org_world.owner, other_admin, OrganizationRole.ADMIN)

        result = await use_cases.remove_organization_member.execute(
            {
                "principal_external_id": org_world.admin.external_id,
                "organization_id": org_world.organization.id,
                "target_user": str(other_admin.id),
            },
            ctx(org_world.admin.external_id),
        )

        error = result.get_error()
        assert error.code == "UNAUTHORIZED"
        assert "Insufficient permissions" in error.message

    @pytest.mark.asyncio
    async def test_owner_removes_admin_physically(self, use_cases, org_world, adapters) -> None:
        """Removal deletes the row."""
        repo = adapters.persistence.organization_memberships
        target = await repo.find_by_user_id_and_organization_id(org_world.admin.id, org_world.organization.id)

        result = await use_cases.remove_organization_member.execute(
            {
                "principal_external_id": org_world.owner.external_id,
                "organization_id": org_world.organization.id,
                "target_user": str(org_world.admin.id),
            },
            ctx(org_world.owner.external_id),
        )

        assert result.is_success
        assert result.get_value() is None
        assert await repo.find_by_id(target.id) is None

    @pytest.mark.asyncio
    async def test_admin_removes_member(self, use_cases, org_world) -> None:
        """Admins may remove members."""
        result = await use_cases.remove_organization_member.execute(
            {
                "principal_external_id": org_world.admin.external_id,
                "organization_id": org_world.organization.id,
                "target_user": str(org_world.member.id),
            },
            ctx(org_world.admin.external_id),
        )

        assert result.is_success

    @pytest.mark.asyncio
    async def test_owner_cannot_be_removed(self, use_cases, org_world) -> None:
        """The owner's membership cannot be removed."""
        result = await use_cases.remove_organization_member.execute(
            {
                "principal_external_id": org_world.owner.external_id,
                "organization_id": org_world.organization.id,
                "target_user": str(org_world.owner.id),
            },
            ctx(org_world.owner.external_id),
        )

        assert "owner cannot be removed" in result.get_error().message

    @pytest.mark.asyncio
    async def test_revoke_pending_invitation_by_username(self, use_cases, org_world, adapters) -> None:
        """A pending invitation is removed by username."""
        await use_cases.add_organization_member.execute(
            invite_payload(org_world.owner, org_world.organization.id, "pending@x.com"),
            ctx(org_world.owner.external_id),
        )

        result = await use_cases.remove_organization_member.execute(
            {
                "principal_external_id": org_world.owner.external_id,
                "organization_id": org_world.organization.id,
                "target_user": "pending@x.com",
                "remove_by_username": True,
            },
            ctx(org_world.owner.external_id),
        )

        assert result.is_success
        repo = adapters.persistence.organization_memberships
        assert await repo.find_by_username_and_organization_id("pending@x.com", org_world.organization.id) is None

    @pytest.mark.asyncio
    async def test_malformed_target_id(self, use_cases, org_world) -> None:
        """A target that is neither a uuid nor a username is not found."""
        result = await use_cases.remove_organization_member.execute(
            {
                "principal_external_id": org_world.owner.external_id,
                "organization_id": org_world.organization.id,
                "target_user": "not-a-uuid",
            },
            ctx(org_world.owner.external_id),
        )

        assert result.get_error().code == "NOT_FOUND"


class TestUpdateOrganizationMemberRole:
    """Tests for UpdateOrganizationMemberRole."""

    def payload(self, actor, org_world, target, role: OrganizationRole) -> dict:
        return {
            "principal_external_id": actor.external_id,
            "organization_id": org_world.organization.id,
            "target_user_id": target.id,
            "role_code": role,
        }

    @pytest.mark.asyncio
    async def test_owner_promotes_member(self, use_cases, org_world) -> None:
        """The owner may grant admin."""
        result = await use_cases.update_organization_member_role.execute(
            self.payload(org_world.owner, org_world, org_world.member, OrganizationRole.ADMIN),
            ctx(org_world.owner.external_id),
        )

        assert result.get_value().role_code == OrganizationRole.ADMIN

    @pytest.mark.asyncio
    async def test_admin_may_demote_admin(self, use_cases, org_world, create_user, add_active_member) -> None:
        """Admins may set another admin to member."""
        other_admin = await create_user("other-admin")
        await add_active_member(org_world.organization.id, org_world.owner, other_admin, OrganizationRole.ADMIN)

        result = await use_cases.update_organization_member_role.execute(
            self.payload(org_world.admin, org_world, other_admin, OrganizationRole.MEMBER),
            ctx(org_world.admin.external_id),
        )

        assert result.get_value().role_code == OrganizationRole.MEMBER

    @pytest.mark.asyncio
    async def test_admin_cannot_grant_admin(self, use_cases, org_world) -> None:
        """Admins cannot grant admin."""
        result = await use_cases.update_organization_member_role.execute(
            self.payload(org_world.admin, org_world, org_world.member, OrganizationRole.ADMIN),
            ctx(org_world.admin.external_id),
        )

        assert result.get_error().code == "UNAUTHORIZED"

    @pytest.mark.asyncio
    async def test_owner_role_cannot_change(self, use_cases, org_world) -> None:
        """The owner's role changes only by transfer."""
        result = await use_cases.update_organization_member_role.execute(
            self.payload(org_world.owner, org_world, org_world.owner, OrganizationRole.MEMBER),
            ctx(org_world.owner.external_id),
        )

        assert "transfer ownership" in result.get_error().message

    @pytest.mark.asyncio
    async def test_same_role_only_touches_updated_at(self, use_cases, org_world, adapters, clock) -> None:
        """Setting the current role only moves updated_at."""
        repo = adapters.persistence.organization_memberships
        before = await repo.find_by_user_id_and_organization_id(org_world.member.id, org_world.organization.id)
        clock.advance(timedelta(minutes=5))

        result = await use_cases.update_organization_member_role.execute(
            self.payload(org_world.owner, org_world, org_world.member, OrganizationRole.MEMBER),
            ctx(org_world.owner.external_id),
        )

        after = result.get_value()
        assert after.updated_at == clock.now()
        assert after.model_dump(exclude={"updated_at"}) == before.model_dump(exclude={"updated_at"})

    @pytest.mark.asyncio
    async def test_inactive_target(self, use_cases, org_world) -> None:
        """A target without an active membership is not found."""
        await use_cases.leave_organization.execute(
            {"principal_external_id": org_world.member.external_id, "organization_id": org_world.organization.id},
            ctx(org_world.member.external_id),
        )

        result = await use_cases.update_organization_member_role.execute(
            self.payload(org_world.owner, org_world, org_world.member, OrganizationRole.ADMIN),
            ctx(org_world.owner.external_id),
        )

        assert result.get_error().code == "NOT_FOUND"


class TestActiveInvariant:
    """is_active holds exactly when joined, not left and not deleted."""

    @pytest.mark.asyncio
    async def test_every_stored_membership_matches_invariant(self, org_world, store) -> None:
        """Active rows are joined and neither left nor deleted."""
        for membership in store.memberships.values():
            expected = (
                membership.joined_at is not None and membership.left_at is None and membership.deleted_at is None
            )
            assert is_active_membership(membership) is expected
            assert isinstance(membership, OrganizationMembership)

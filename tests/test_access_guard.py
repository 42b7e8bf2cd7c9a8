"""
Tests for the Access Guard and the Membership Directory.

Covers:
  - admin short-circuit (any program id, even without memberships or a row)
  - membership lookup: missing / inactive / role-restricted
  - malformed ids are validation errors, not denials
  - one active membership per (user, program); role change = new row
"""

import pytest

from reqflow.core.exceptions import ConflictError, ForbiddenError, NotFoundError, ValidationError
from reqflow.core.identifiers import new_id
from reqflow.core.roles import GlobalRole, ProgramRole
from reqflow.models import db
from reqflow.models.program import ProgramMembership
from reqflow.services import membership_service
from reqflow.services.access_guard import check_program_access


class TestCheckProgramAccess:
    def test_admin_is_granted_without_membership(self, program, principals):
        access = check_program_access(principals["admin"], program.id)
        assert access.is_admin is True
        assert access.role is None
        assert access.effective_role is GlobalRole.ADMIN

    def test_admin_is_granted_for_program_with_no_memberships_at_all(self, principals):
        unknown_program = new_id()
        access = check_program_access(principals["admin"], unknown_program, [ProgramRole.MANAGER])
        assert access.program_id == unknown_program
        assert access.is_admin is True

    def test_admin_does_not_query_memberships(self, program, principals, monkeypatch):
        from reqflow.services import access_guard

        def _boom(*args, **kwargs):
            raise AssertionError("membership lookup must not run for admins")

        monkeypatch.setattr(access_guard, "get_active_membership", _boom)
        assert check_program_access(principals["admin"], program.id).is_admin

    def test_non_member_is_denied(self, program, principals):
        with pytest.raises(ForbiddenError) as exc:
            check_program_access(principals["manager"], program.id)
        assert exc.value.reason == "program_access"

    def test_member_gets_program_role_as_effective_role(self, program, member_principals):
        access = check_program_access(member_principals["client"], program.id)
        assert access.role is ProgramRole.CLIENT
        assert access.effective_role is GlobalRole.CLIENT
        assert access.is_admin is False

    def test_program_role_wins_over_global_role(self, program, principals, make_member):
        # Globally a manager, but only a client inside this program
        manager = principals["manager"]
        make_member(program, manager, "client")
        assert check_program_access(manager, program.id).effective_role is GlobalRole.CLIENT

    def test_required_roles_restrict_access(self, program, member_principals):
        with pytest.raises(ForbiddenError) as exc:
            check_program_access(member_principals["team_member"], program.id, [ProgramRole.MANAGER])
        assert exc.value.reason == "program_role"

        access = check_program_access(member_principals["manager"], program.id, [ProgramRole.MANAGER])
        assert access.role is ProgramRole.MANAGER

    def test_inactive_membership_is_denied(self, program, principals, make_member):
        membership = make_member(program, principals["team_member"], "team_member")
        membership.is_active = False
        db.session.commit()
        with pytest.raises(ForbiddenError):
            check_program_access(principals["team_member"], program.id)

    def test_membership_in_other_program_does_not_leak(self, program, principals, make_member):
        from reqflow.models.program import Program

        other = Program(name="Other Program")
        db.session.add(other)
        db.session.commit()
        make_member(other, principals["manager"], "manager")
        with pytest.raises(ForbiddenError):
            check_program_access(principals["manager"], program.id)

    @pytest.mark.parametrize("bad_id", ["", "123", "not-a-valid-object-id!!", "g" * 24, "0" * 24 + "\n", None])
    def test_malformed_program_id_is_validation_error(self, principals, bad_id):
        with pytest.raises(ValidationError):
            check_program_access(principals["admin"], bad_id)
        with pytest.raises(ValidationError):
            check_program_access(principals["client"], bad_id)

    def test_uppercase_id_is_normalised(self, program, member_principals):
        access = check_program_access(member_principals["manager"], program.id.upper())
        assert access.program_id == program.id


class TestMembershipDirectory:
    def test_add_member(self, program):
        user_id = new_id()
        result = membership_service.add_member(program.id, user_id, "team_member", added_by=new_id())
        assert result["role"] == "team_member"
        assert result["is_active"] is True
        assert membership_service.get_active_membership(user_id, program.id) is not None

    def test_second_active_membership_conflicts(self, program):
        user_id = new_id()
        membership_service.add_member(program.id, user_id, "client")
        with pytest.raises(ConflictError):
            membership_service.add_member(program.id, user_id, "manager")

    def test_unknown_role_rejected(self, program):
        with pytest.raises(ValidationError):
            membership_service.add_member(program.id, new_id(), "admin")

    def test_missing_program(self):
        with pytest.raises(NotFoundError):
            membership_service.add_member(new_id(), new_id(), "client")

    def test_archived_program_takes_no_new_members(self, program):
        program.is_active = False
        db.session.commit()
        user_id = new_id()
        with pytest.raises(ConflictError):
            membership_service.add_member(program.id, user_id, "client")
        assert membership_service.get_active_membership(user_id, program.id) is None

    def test_role_change_deactivates_and_inserts(self, program):
        user_id = new_id()
        first = membership_service.add_member(program.id, user_id, "client")
        second = membership_service.change_member_role(program.id, user_id, "manager")

        assert second["id"] != first["id"]
        assert second["role"] == "manager"
        rows = ProgramMembership.query.filter_by(user_id=user_id, program_id=program.id).all()
        assert len(rows) == 2
        assert sum(1 for r in rows if r.is_active) == 1
        old = db.session.get(ProgramMembership, first["id"])
        assert old.is_active is False
        assert old.role == "client"
        assert old.deactivated_at is not None

    def test_deactivate_member(self, program):
        user_id = new_id()
        membership_service.add_member(program.id, user_id, "team_member")
        membership_service.deactivate_member(program.id, user_id)
        assert membership_service.get_active_membership(user_id, program.id) is None
        # A fresh membership can be granted afterwards
        membership_service.add_member(program.id, user_id, "client")

    def test_deactivate_missing_member(self, program):
        with pytest.raises(NotFoundError):
            membership_service.deactivate_member(program.id, new_id())

    def test_list_members(self, program):
        a, b = new_id(), new_id()
        membership_service.add_member(program.id, a, "manager")
        membership_service.add_member(program.id, b, "client")
        membership_service.deactivate_member(program.id, b)

        active = membership_service.list_members(program.id)
        assert [m["user_id"] for m in active] == [a]
        assert len(membership_service.list_members(program.id, include_inactive=True)) == 2

"""
Tests for the lifecycle service (transition / create / update / assign / read).

Covers:
  - end-to-end transition: status, one audit entry, one pending outbox event
  - denied transitions leave no trace (no audit, no outbox, status unchanged)
  - re-submitting an applied transition is a conflict
  - client ownership on submission edges only
  - admin bypasses membership
  - optimistic concurrency: stale writes are retryable conflicts
  - audit / outbox failures never undo the primary mutation
  - draft editing, assignment rules, read-side visibility
  - archived programs and submission windows block create and (re)submit
"""

from datetime import date, timedelta

import pytest
from sqlalchemy import update

from reqflow.core.exceptions import ConflictError, ForbiddenError, NotFoundError, ValidationError
from reqflow.core.identifiers import new_id
from reqflow.core.roles import GlobalRole
from reqflow.middleware.principal import Principal
from reqflow.models import db
from reqflow.models.audit import AuditEntry
from reqflow.models.outbox import OutboxEvent
from reqflow.models.request import Request
from reqflow.services import lifecycle, program_service


def _audits(request_id, action=None):
    q = AuditEntry.query.filter_by(request_id=request_id)
    if action:
        q = q.filter_by(action=action)
    return q.all()


def _events(request_id, event_type=None):
    events = [e for e in OutboxEvent.query.all() if e.request_id == request_id]
    if event_type:
        events = [e for e in events if e.event_type == event_type]
    return events


# ═════════════════════════════════════════════════════════════════════════════
# Transition
# ═════════════════════════════════════════════════════════════════════════════


class TestTransitionEndToEnd:
    def test_manager_moves_submitted_to_in_review(self, program, member_principals, make_request):
        manager = member_principals["manager"]
        req = make_request(program, member_principals["client"], status="submitted")

        updated = lifecycle.transition_request(manager, req.id, "in_review")

        assert updated.status == "in_review"
        assert db.session.get(Request, req.id).status == "in_review"

        audits = _audits(req.id)
        assert len(audits) == 1
        entry = audits[0]
        assert entry.action == "request.status_changed"
        assert entry.entity_type == "request"
        assert entry.before == {"status": "submitted"}
        assert entry.after == {"status": "in_review"}
        assert entry.meta == {"from": "submitted", "to": "in_review"}
        assert entry.performed_by == manager.id
        assert entry.program_id == program.id

        events = _events(req.id)
        assert len(events) == 1
        event = events[0]
        assert event.event_type == "request.status_changed"
        assert event.status == "pending"
        assert event.retry_count == 0
        assert event.max_retries == 3

    def test_outbox_payload_shape(self, program, member_principals, make_request):
        manager = member_principals["manager"]
        req = make_request(program, member_principals["client"], status="submitted")
        lifecycle.transition_request(manager, req.id, "in_review")

        event = _events(req.id)[0]
        payload = event.payload
        assert payload["eventId"] == event.id
        assert payload["eventType"] == "request.status_changed"
        assert payload["programId"] == program.id
        assert payload["requestId"] == req.id
        assert payload["data"]["from"] == "submitted"
        assert payload["data"]["to"] == "in_review"
        assert payload["performedBy"] == {"userId": manager.id, "name": manager.name}
        assert payload["timestamp"]

    def test_team_member_is_denied_and_nothing_is_written(self, program, member_principals, make_request):
        req = make_request(program, member_principals["client"], status="submitted")

        with pytest.raises(ForbiddenError) as exc:
            lifecycle.transition_request(member_principals["team_member"], req.id, "in_review")

        assert exc.value.reason == "role_not_permitted"
        assert db.session.get(Request, req.id).status == "submitted"
        assert _audits(req.id) == []
        assert _events(req.id) == []

    def test_version_increments(self, program, member_principals, make_request):
        req = make_request(program, member_principals["client"], status="submitted")
        assert req.version == 1
        updated = lifecycle.transition_request(member_principals["manager"], req.id, "in_review")
        assert updated.version == 2

    def test_full_happy_path(self, program, member_principals, make_request):
        client = member_principals["client"]
        manager = member_principals["manager"]
        req = make_request(program, client)

        lifecycle.transition_request(client, req.id, "submitted")
        lifecycle.transition_request(manager, req.id, "in_review")
        lifecycle.transition_request(manager, req.id, "rejected")
        lifecycle.transition_request(client, req.id, "submitted")
        lifecycle.transition_request(manager, req.id, "in_review")
        lifecycle.transition_request(manager, req.id, "approved")
        final = lifecycle.transition_request(manager, req.id, "completed")

        assert final.status == "completed"
        assert final.version == 8
        assert len(_audits(req.id, "request.status_changed")) == 7
        assert len(_events(req.id, "request.status_changed")) == 7

        with pytest.raises(ForbiddenError) as exc:
            lifecycle.transition_request(manager, req.id, "submitted")
        assert exc.value.reason == "invalid_transition"


class TestTransitionRules:
    def test_resubmitting_applied_transition_conflicts(self, program, member_principals, make_request):
        manager = member_principals["manager"]
        req = make_request(program, member_principals["client"], status="submitted")

        lifecycle.transition_request(manager, req.id, "in_review")
        with pytest.raises(ConflictError):
            lifecycle.transition_request(manager, req.id, "in_review")

        assert len(_audits(req.id)) == 1
        assert len(_events(req.id)) == 1

    def test_edge_absent_from_table_is_forbidden(self, program, member_principals, make_request):
        req = make_request(program, member_principals["client"])
        with pytest.raises(ForbiddenError) as exc:
            lifecycle.transition_request(member_principals["manager"], req.id, "approved")
        assert exc.value.reason == "invalid_transition"

    def test_client_cannot_resubmit_someone_elses_request(self, program, member_principals, make_request, make_member):
        other_client = Principal(id=new_id(), global_role=GlobalRole.CLIENT, name="other client")
        make_member(program, other_client, "client")
        req = make_request(program, member_principals["client"], status="rejected")

        with pytest.raises(ForbiddenError) as exc:
            lifecycle.transition_request(other_client, req.id, "submitted")
        assert exc.value.reason == "not_owner"
        assert db.session.get(Request, req.id).status == "rejected"
        assert _audits(req.id) == []

    def test_client_cannot_submit_someone_elses_draft(self, program, member_principals, make_request):
        req = make_request(program, member_principals["team_member"])
        with pytest.raises(ForbiddenError) as exc:
            lifecycle.transition_request(member_principals["client"], req.id, "submitted")
        assert exc.value.reason == "not_owner"

    def test_client_resubmits_own_request(self, program, member_principals, make_request):
        client = member_principals["client"]
        req = make_request(program, client, status="rejected")
        assert lifecycle.transition_request(client, req.id, "submitted").status == "submitted"

    def test_team_member_may_submit_request_they_did_not_create(self, program, member_principals, make_request):
        req = make_request(program, member_principals["client"])
        updated = lifecycle.transition_request(member_principals["team_member"], req.id, "submitted")
        assert updated.status == "submitted"

    def test_admin_needs_no_membership(self, program, principals, make_request):
        req = make_request(program, new_id(), status="approved")
        updated = lifecycle.transition_request(principals["admin"], req.id, "completed")
        assert updated.status == "completed"

    def test_non_member_is_denied(self, program, principals, make_request):
        req = make_request(program, new_id(), status="submitted")
        with pytest.raises(ForbiddenError) as exc:
            lifecycle.transition_request(principals["manager"], req.id, "in_review")
        assert exc.value.reason == "program_access"

    def test_missing_request(self, principals):
        with pytest.raises(NotFoundError):
            lifecycle.transition_request(principals["admin"], new_id(), "submitted")

    @pytest.mark.parametrize("bad_id", ["nope", "0" * 24 + "\n", "0" * 23 + "\n"])
    def test_malformed_request_id(self, principals, bad_id):
        with pytest.raises(ValidationError):
            lifecycle.transition_request(principals["admin"], bad_id, "submitted")

    def test_unknown_target_status(self, program, principals, make_request):
        req = make_request(program, new_id())
        with pytest.raises(ValidationError):
            lifecycle.transition_request(principals["admin"], req.id, "archived")

    def test_request_addressed_through_other_program(self, program, principals, make_request):
        req = make_request(program, new_id())
        with pytest.raises(NotFoundError):
            lifecycle.transition_request(principals["admin"], req.id, "submitted", program_id=new_id())


# ═════════════════════════════════════════════════════════════════════════════
# Concurrency
# ═════════════════════════════════════════════════════════════════════════════


def _concurrent_bump(request_id):
    """Advance the row behind the session's back, leaving loaded objects stale."""
    db.session.execute(
        update(Request)
        .where(Request.id == request_id)
        .values(status="rejected", version=Request.version + 1)
        .execution_options(synchronize_session=False)
    )


class TestOptimisticConcurrency:
    def test_stale_write_raises_retryable_conflict(self, program, member_principals, make_request):
        req = make_request(program, member_principals["client"], status="submitted")
        req = db.session.get(Request, req.id)
        assert req.version == 1

        _concurrent_bump(req.id)

        with pytest.raises(ConflictError) as exc:
            lifecycle._apply_change(req, status="in_review")
        assert exc.value.retryable is True

    def test_transition_racing_another_writer(self, program, member_principals, make_request, monkeypatch):
        req = make_request(program, member_principals["client"], status="submitted")
        real_check = lifecycle.check_program_access

        def _check_then_race(principal, program_id, *args, **kwargs):
            access = real_check(principal, program_id, *args, **kwargs)
            _concurrent_bump(req.id)
            return access

        monkeypatch.setattr(lifecycle, "check_program_access", _check_then_race)

        with pytest.raises(ConflictError) as exc:
            lifecycle.transition_request(member_principals["manager"], req.id, "in_review")
        assert exc.value.retryable is True
        assert _audits(req.id) == []
        assert _events(req.id) == []


# ═════════════════════════════════════════════════════════════════════════════
# Best-effort audit / outbox
# ═════════════════════════════════════════════════════════════════════════════


class TestHousekeepingFailures:
    def test_audit_failure_does_not_undo_transition(self, program, member_principals, make_request, monkeypatch):
        from reqflow.models import audit

        def _fail(**kwargs):
            raise RuntimeError("audit store unavailable")

        monkeypatch.setattr(audit, "write_audit", _fail)
        req = make_request(program, member_principals["client"], status="submitted")

        updated = lifecycle.transition_request(member_principals["manager"], req.id, "in_review")

        assert updated.status == "in_review"
        db.session.expire_all()
        assert db.session.get(Request, req.id).status == "in_review"
        assert _audits(req.id) == []
        assert len(_events(req.id)) == 1

    def test_outbox_failure_does_not_undo_transition(self, program, member_principals, make_request, monkeypatch):
        from reqflow.services import outbox_service

        def _fail(*args, **kwargs):
            raise RuntimeError("outbox insert failed")

        monkeypatch.setattr(outbox_service, "build_payload", _fail)
        req = make_request(program, member_principals["client"], status="submitted")

        updated = lifecycle.transition_request(member_principals["manager"], req.id, "in_review")

        assert updated.status == "in_review"
        db.session.expire_all()
        assert db.session.get(Request, req.id).status == "in_review"
        assert len(_audits(req.id)) == 1
        assert _events(req.id) == []

    def test_database_error_inside_audit_savepoint_is_contained(self, program, member_principals, make_request, monkeypatch):
        from reqflow.models import audit

        def _bad_row(**kwargs):
            # NOT NULL violation raised by the database on flush
            entry = audit.AuditEntry(
                action=kwargs["action"],
                entity_type=kwargs["entity_type"],
                entity_id=kwargs["entity_id"],
                request_id=kwargs["request_id"],
                program_id=kwargs["program_id"],
                performed_by=None,
            )
            db.session.add(entry)
            db.session.flush()
            return entry

        monkeypatch.setattr(audit, "write_audit", _bad_row)
        req = make_request(program, member_principals["client"], status="submitted")

        updated = lifecycle.transition_request(member_principals["manager"], req.id, "in_review")

        assert updated.status == "in_review"
        db.session.expire_all()
        assert db.session.get(Request, req.id).status == "in_review"
        assert _audits(req.id) == []
        assert len(_events(req.id)) == 1


# ═════════════════════════════════════════════════════════════════════════════
# Create / update / assign
# ═════════════════════════════════════════════════════════════════════════════


class TestCreateRequest:
    def test_create_starts_in_draft(self, program, member_principals):
        client = member_principals["client"]
        req = lifecycle.create_request(client, program.id, {
            "title": "New vendor onboarding",
            "priority": "high",
            "fields": {"vendor": "ACME"},
        })
        assert req.status == "draft"
        assert req.version == 1
        assert req.created_by == client.id
        assert req.fields == {"vendor": "ACME"}

        created = _audits(req.id, "request.created")
        assert len(created) == 1
        assert created[0].after["title"] == "New vendor onboarding"
        assert len(_events(req.id, "request.created")) == 1

    def test_admin_creates_in_any_existing_program(self, program, principals):
        req = lifecycle.create_request(principals["admin"], program.id, {"title": "Admin request"})
        assert req.program_id == program.id

    def test_missing_program(self, principals):
        with pytest.raises(NotFoundError):
            lifecycle.create_request(principals["admin"], new_id(), {"title": "Orphan"})

    def test_non_member_cannot_create(self, program, principals):
        with pytest.raises(ForbiddenError):
            lifecycle.create_request(principals["client"], program.id, {"title": "Nope"})

    @pytest.mark.parametrize("data", [
        {},
        {"title": "ab"},
        {"title": "x" * 201},
        {"title": "Valid title", "priority": "critical"},
        {"title": "Valid title", "fields": ["not", "a", "map"]},
        {"title": "Valid title", "description": "d" * 5001},
    ])
    def test_validation(self, program, member_principals, data):
        with pytest.raises(ValidationError):
            lifecycle.create_request(member_principals["client"], program.id, data)
        assert Request.query.count() == 0


class TestProgramAvailability:
    """Archived programs and programs outside their window take no submissions."""

    @pytest.fixture()
    def archived(self, program, principals):
        program_service.archive_program(principals["admin"], program.id)
        return program

    def test_create_in_archived_program(self, archived, member_principals):
        with pytest.raises(ConflictError):
            lifecycle.create_request(member_principals["client"], archived.id, {"title": "Too late"})
        assert Request.query.count() == 0
        assert OutboxEvent.query.count() == 0

    @pytest.mark.parametrize("current", ["draft", "rejected"])
    def test_submission_into_archived_program(self, program, principals, member_principals, make_request,
                                              current):
        client = member_principals["client"]
        req = make_request(program, client, status=current)
        program_service.archive_program(principals["admin"], program.id)

        with pytest.raises(ConflictError):
            lifecycle.transition_request(client, req.id, "submitted")
        assert db.session.get(Request, req.id).status == current
        assert _audits(req.id) == []
        assert _events(req.id) == []

    def test_in_flight_requests_keep_moving(self, archived, member_principals, make_request):
        req = make_request(archived, member_principals["client"], status="submitted")
        updated = lifecycle.transition_request(member_principals["manager"], req.id, "in_review")
        assert updated.status == "in_review"

    def test_create_before_window_opens(self, program, member_principals):
        program.start_date = date.today() + timedelta(days=7)
        db.session.commit()
        with pytest.raises(ValidationError) as exc:
            lifecycle.create_request(member_principals["client"], program.id, {"title": "Early bird"})
        assert "start_date" in exc.value.details

    def test_submit_after_window_closes(self, program, member_principals, make_request):
        client = member_principals["client"]
        req = make_request(program, client)
        program.end_date = date.today() - timedelta(days=7)
        db.session.commit()
        with pytest.raises(ValidationError):
            lifecycle.transition_request(client, req.id, "submitted")
        assert db.session.get(Request, req.id).status == "draft"

    def test_window_bounds_are_inclusive(self, program):
        program.start_date = date(2026, 3, 1)
        program.end_date = date(2026, 3, 31)
        program_service.ensure_accepting_requests(program, today=date(2026, 3, 1))
        program_service.ensure_accepting_requests(program, today=date(2026, 3, 31))
        with pytest.raises(ValidationError):
            program_service.ensure_accepting_requests(program, today=date(2026, 2, 28))
        with pytest.raises(ValidationError):
            program_service.ensure_accepting_requests(program, today=date(2026, 4, 1))

    def test_archive_twice_conflicts(self, archived, principals):
        assert archived.archived_at is not None
        with pytest.raises(ConflictError):
            program_service.archive_program(principals["admin"], archived.id)

    def test_only_admin_archives(self, program, principals):
        with pytest.raises(ForbiddenError) as exc:
            program_service.archive_program(principals["manager"], program.id)
        assert exc.value.reason == "global_role"
        assert program.is_active is True


class TestUpdateRequest:
    def test_creator_edits_draft(self, program, member_principals, make_request):
        client = member_principals["client"]
        req = make_request(program, client, fields={"vendor": "ACME"})

        updated = lifecycle.update_request(client, req.id, {
            "title": "Renamed request",
            "fields": {"vendor": "Globex"},
        })

        assert updated.title == "Renamed request"
        assert updated.fields == {"vendor": "Globex"}
        assert updated.version == 2

        [entry] = _audits(req.id, "request.updated")
        assert entry.before["title"] == "Access to reporting database"
        assert entry.after["title"] == "Renamed request"
        assert entry.meta == {"changed": ["fields", "title"]}

        [field_entry] = _audits(req.id, "request.field_edited")
        assert field_entry.before == {"fields": {"vendor": "ACME"}}
        assert field_entry.after == {"fields": {"vendor": "Globex"}}

        assert len(_events(req.id, "request.updated")) == 1

    def test_no_field_edited_entry_without_fields_change(self, program, member_principals, make_request):
        client = member_principals["client"]
        req = make_request(program, client)
        lifecycle.update_request(client, req.id, {"priority": "urgent"})
        assert _audits(req.id, "request.field_edited") == []

    def test_unchanged_values_are_a_no_op(self, program, member_principals, make_request):
        client = member_principals["client"]
        req = make_request(program, client)
        updated = lifecycle.update_request(client, req.id, {"priority": "medium"})
        assert updated.version == 1
        assert _audits(req.id) == []

    def test_only_drafts_are_editable(self, program, member_principals, make_request):
        client = member_principals["client"]
        req = make_request(program, client, status="submitted")
        with pytest.raises(ConflictError):
            lifecycle.update_request(client, req.id, {"title": "Too late"})

    def test_team_member_cannot_edit_others_draft(self, program, member_principals, make_request):
        req = make_request(program, member_principals["client"])
        with pytest.raises(ForbiddenError) as exc:
            lifecycle.update_request(member_principals["team_member"], req.id, {"title": "Hijack"})
        assert exc.value.reason == "not_owner"

    def test_manager_edits_others_draft(self, program, member_principals, make_request):
        req = make_request(program, member_principals["client"])
        updated = lifecycle.update_request(member_principals["manager"], req.id, {"description": "Clarified"})
        assert updated.description == "Clarified"

    def test_empty_update_is_rejected(self, program, member_principals, make_request):
        client = member_principals["client"]
        req = make_request(program, client)
        with pytest.raises(ValidationError):
            lifecycle.update_request(client, req.id, {"status": "approved"})


class TestAssignRequest:
    def test_manager_assigns_team_member(self, program, member_principals, make_request):
        assignee = member_principals["team_member"]
        req = make_request(program, member_principals["client"], status="submitted")

        updated = lifecycle.assign_request(member_principals["manager"], req.id, assignee.id)

        assert updated.assigned_to == assignee.id
        [entry] = _audits(req.id, "request.assigned")
        assert entry.before == {"assigned_to": None}
        assert entry.after == {"assigned_to": assignee.id}
        [event] = _events(req.id, "request.assigned")
        assert event.payload["data"]["assignedTo"] == assignee.id

    def test_assignee_must_be_manager_or_team_member(self, program, member_principals, make_request):
        req = make_request(program, member_principals["client"], status="submitted")
        with pytest.raises(ValidationError):
            lifecycle.assign_request(member_principals["manager"], req.id, member_principals["client"].id)
        with pytest.raises(ValidationError):
            lifecycle.assign_request(member_principals["manager"], req.id, new_id())

    @pytest.mark.parametrize("status", ["draft", "completed"])
    def test_cannot_assign_inactive_states(self, program, member_principals, make_request, status):
        req = make_request(program, member_principals["client"], status=status)
        with pytest.raises(ConflictError):
            lifecycle.assign_request(member_principals["manager"], req.id, member_principals["team_member"].id)

    def test_team_member_cannot_assign(self, program, member_principals, make_request):
        req = make_request(program, member_principals["client"], status="submitted")
        with pytest.raises(ForbiddenError) as exc:
            lifecycle.assign_request(member_principals["team_member"], req.id, member_principals["team_member"].id)
        assert exc.value.reason == "program_role"

    def test_admin_assigns(self, program, member_principals, make_request):
        req = make_request(program, member_principals["client"], status="in_review")
        updated = lifecycle.assign_request(member_principals["admin"], req.id, member_principals["manager"].id)
        assert updated.assigned_to == member_principals["manager"].id


# ═════════════════════════════════════════════════════════════════════════════
# Read side
# ═════════════════════════════════════════════════════════════════════════════


class TestReadSide:
    @pytest.fixture()
    def seeded(self, program, member_principals, make_request):
        p = member_principals
        own_client = make_request(program, p["client"], title="Client request")
        own_member = make_request(program, p["team_member"], title="Member request")
        assigned = make_request(program, p["manager"], status="in_review",
                                title="Assigned request", assigned_to=p["team_member"].id)
        unrelated = make_request(program, p["manager"], status="submitted",
                                 priority="urgent", title="Budget approval")
        return {"client": own_client, "member": own_member, "assigned": assigned, "unrelated": unrelated}

    def _ids(self, result):
        return {r["id"] for r in result["requests"]}

    def test_manager_and_admin_see_everything(self, program, member_principals, seeded):
        for role in ("manager", "admin"):
            result = lifecycle.list_requests(member_principals[role], program.id)
            assert result["total"] == 4

    def test_team_member_sees_own_and_assigned(self, program, member_principals, seeded):
        result = lifecycle.list_requests(member_principals["team_member"], program.id)
        assert self._ids(result) == {seeded["member"].id, seeded["assigned"].id}

    def test_client_sees_own_only(self, program, member_principals, seeded):
        result = lifecycle.list_requests(member_principals["client"], program.id)
        assert self._ids(result) == {seeded["client"].id}

    def test_filters(self, program, member_principals, seeded):
        manager = member_principals["manager"]
        assert self._ids(lifecycle.list_requests(manager, program.id, {"status": "in_review"})) == {seeded["assigned"].id}
        assert self._ids(lifecycle.list_requests(manager, program.id, {"priority": "urgent"})) == {seeded["unrelated"].id}
        assert self._ids(lifecycle.list_requests(manager, program.id, {"search": "budget"})) == {seeded["unrelated"].id}
        assert self._ids(lifecycle.list_requests(
            manager, program.id, {"assigned_to": member_principals["team_member"].id},
        )) == {seeded["assigned"].id}

    def test_invalid_filter(self, program, member_principals, seeded):
        with pytest.raises(ValidationError):
            lifecycle.list_requests(member_principals["manager"], program.id, {"status": "archived"})

    def test_pagination(self, program, member_principals, seeded):
        result = lifecycle.list_requests(member_principals["manager"], program.id, page=2, per_page=3)
        assert result["total"] == 4
        assert result["pages"] == 2
        assert len(result["requests"]) == 1

    def test_get_request_visibility(self, program, member_principals, seeded):
        req, access = lifecycle.get_request(member_principals["team_member"], seeded["assigned"].id)
        assert req.id == seeded["assigned"].id
        assert access.role.value == "team_member"

        with pytest.raises(ForbiddenError):
            lifecycle.get_request(member_principals["client"], seeded["member"].id)

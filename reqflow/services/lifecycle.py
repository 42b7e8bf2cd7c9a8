"""
Request Lifecycle Service — the only writer of Request rows.

Every mutation follows the same commit path:
  1. Load the request (NotFoundError) and run the Access Guard on its program.
  2. Ask the Transition Authority / ownership rules whether the caller may act.
     Creating or (re)submitting also needs the program to accept requests.
  3. Apply the change with a conditional UPDATE on the observed
     (status, version); a concurrent writer makes it a retryable ConflictError.
  4. Append the audit entry and enqueue the outbox event, each in its own
     SAVEPOINT. A failure there is logged and never undoes step 3.
  5. Commit once.

Usage:
    from reqflow.services.lifecycle import transition_request

    req = transition_request(principal, request_id, "in_review")
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import or_, select, update

from reqflow.core.exceptions import ConflictError, ForbiddenError, NotFoundError, ValidationError
from reqflow.core.identifiers import require_valid_id
from reqflow.core.roles import GlobalRole, ProgramRole
from reqflow.models import db
from reqflow.models.audit import append_audit_safely
from reqflow.models.program import Program
from reqflow.models.request import (
    INITIAL_STATUS,
    REQUEST_PRIORITIES,
    REQUEST_STATUSES,
    TERMINAL_STATUSES,
    Request,
)
from reqflow.services.access_guard import ProgramAccess, check_program_access
from reqflow.services.membership_service import get_active_membership
from reqflow.services.outbox_service import enqueue_event
from reqflow.services.program_service import ensure_accepting_requests
from reqflow.services.transition_authority import SUBMISSION_EDGES, can_user_transition, explain_denial

logger = logging.getLogger(__name__)

TITLE_MIN, TITLE_MAX = 3, 200
DESCRIPTION_MAX = 5000

# Roles that may edit a draft they did not create
_EDITOR_ROLES = frozenset({GlobalRole.ADMIN, GlobalRole.MANAGER})
_ASSIGNABLE_ROLES = frozenset({ProgramRole.MANAGER, ProgramRole.TEAM_MEMBER})
_UNASSIGNABLE_STATUSES = frozenset({INITIAL_STATUS}) | TERMINAL_STATUSES


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ═════════════════════════════════════════════════════════════════════════════
# Helpers
# ═════════════════════════════════════════════════════════════════════════════


def _load_request(request_id: str, program_id: str | None = None) -> Request:
    request_id = require_valid_id(request_id, "request ID")
    req = db.session.get(Request, request_id)
    if not req:
        raise NotFoundError(resource="Request", resource_id=request_id)
    # Requests addressed through another program's URL do not exist there
    if program_id is not None and req.program_id != require_valid_id(program_id, "program ID"):
        raise NotFoundError(resource="Request", resource_id=request_id)
    return req


def _validate_data(data: dict, *, partial: bool) -> dict:
    """Return the cleaned subset of title/description/priority/fields."""
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")

    errors: dict[str, str] = {}
    cleaned: dict = {}

    if "title" in data or not partial:
        title = data.get("title")
        title = title.strip() if isinstance(title, str) else title
        if not isinstance(title, str) or not (TITLE_MIN <= len(title) <= TITLE_MAX):
            errors["title"] = f"title must be {TITLE_MIN}-{TITLE_MAX} characters"
        else:
            cleaned["title"] = title

    if "description" in data:
        description = data.get("description") or ""
        if not isinstance(description, str) or len(description) > DESCRIPTION_MAX:
            errors["description"] = f"description must be a string of at most {DESCRIPTION_MAX} characters"
        else:
            cleaned["description"] = description

    if "priority" in data:
        priority = data.get("priority")
        if priority not in REQUEST_PRIORITIES:
            errors["priority"] = f"priority must be one of: {', '.join(REQUEST_PRIORITIES)}"
        else:
            cleaned["priority"] = priority

    if "fields" in data:
        fields = data.get("fields")
        if fields is None:
            fields = {}
        if not isinstance(fields, dict):
            errors["fields"] = "fields must be an object"
        else:
            cleaned["fields"] = fields

    if errors:
        raise ValidationError("Request validation failed", details=errors)
    return cleaned


def _apply_change(req: Request, **values) -> None:
    """
    Conditional UPDATE guarded by the status and version read earlier.

    Raises:
        ConflictError (retryable): another writer changed the row first.
    """
    observed_status, observed_version = req.status, req.version
    result = db.session.execute(
        update(Request)
        .where(
            Request.id == req.id,
            Request.status == observed_status,
            Request.version == observed_version,
        )
        .values(version=observed_version + 1, updated_at=_utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.rollback()
        logger.info(
            "Stale write on request %s (status=%s version=%s)",
            req.id, observed_status, observed_version,
            extra={"program_id": req.program_id},
        )
        raise ConflictError("Request was modified concurrently; reload and retry", retryable=True)
    db.session.expire(req)


def _record(principal, req: Request, *, action: str, event_type: str,
            before=None, after=None, metadata=None, data=None) -> None:
    """Audit + outbox for one mutation, both best-effort."""
    append_audit_safely(
        action=action,
        entity_type="request",
        entity_id=req.id,
        request_id=req.id,
        program_id=req.program_id,
        performed_by=principal.id,
        before=before,
        after=after,
        metadata=metadata,
    )
    enqueue_event(
        event_type,
        program_id=req.program_id,
        request_id=req.id,
        data=data,
        performed_by=principal,
    )


def _can_view(access: ProgramAccess, req: Request) -> bool:
    role = access.effective_role
    if role in (GlobalRole.ADMIN, GlobalRole.MANAGER):
        return True
    if role is GlobalRole.TEAM_MEMBER:
        return access.user_id in (req.created_by, req.assigned_to)
    return req.created_by == access.user_id


# ═════════════════════════════════════════════════════════════════════════════
# Transition
# ═════════════════════════════════════════════════════════════════════════════


def transition_request(principal, request_id: str, target_status: str,
                       program_id: str | None = None) -> Request:
    """
    Move a request to ``target_status``.

    Raises:
        ValidationError: malformed id, unknown status, or a submission
            outside the program window.
        NotFoundError: request does not exist.
        ForbiddenError: access guard, transition table or ownership denial.
        ConflictError: already in ``target_status``, submission into an
            archived program, or stale write.
    """
    request_id = require_valid_id(request_id, "request ID")
    if target_status not in REQUEST_STATUSES:
        raise ValidationError(
            f"status must be one of: {', '.join(REQUEST_STATUSES)}",
            details={"status": target_status},
        )

    req = _load_request(request_id, program_id)
    access = check_program_access(principal, req.program_id)
    current = req.status

    if current == target_status:
        raise ConflictError(f"Request is already {target_status}")

    role = access.effective_role
    if not can_user_transition(current, target_status, role):
        reason = explain_denial(current, target_status, role)
        logger.warning(
            "Transition %s -> %s denied for %s (%s) on request %s",
            current, target_status, principal.id, role.value, req.id,
            extra={"program_id": req.program_id},
        )
        raise ForbiddenError(f"Cannot move request from {current} to {target_status}", reason=reason)

    if (
        role is GlobalRole.CLIENT
        and (current, target_status) in SUBMISSION_EDGES
        and req.created_by != principal.id
    ):
        raise ForbiddenError("Clients can only submit their own requests", reason="not_owner")

    if (current, target_status) in SUBMISSION_EDGES:
        ensure_accepting_requests(db.session.get(Program, req.program_id))

    _apply_change(req, status=target_status)

    _record(
        principal, req,
        action="request.status_changed",
        event_type="request.status_changed",
        before={"status": current},
        after={"status": target_status},
        metadata={"from": current, "to": target_status},
        data={"from": current, "to": target_status, "title": req.title},
    )
    db.session.commit()

    logger.info(
        "Request %s: %s -> %s by %s", req.id, current, target_status, principal.id,
        extra={"program_id": req.program_id},
    )
    return req


# ═════════════════════════════════════════════════════════════════════════════
# Create / update / assign
# ═════════════════════════════════════════════════════════════════════════════


def create_request(principal, program_id: str, data: dict) -> Request:
    """Create a ``draft`` request owned by ``principal``."""
    access = check_program_access(principal, program_id)
    program = db.session.get(Program, access.program_id)
    if not program:
        raise NotFoundError(resource="Program", resource_id=access.program_id)
    ensure_accepting_requests(program)

    cleaned = _validate_data(data, partial=False)
    req = Request(
        program_id=access.program_id,
        title=cleaned["title"],
        description=cleaned.get("description", ""),
        priority=cleaned.get("priority", "medium"),
        fields=cleaned.get("fields", {}),
        status=INITIAL_STATUS,
        created_by=principal.id,
        version=1,
    )
    db.session.add(req)
    db.session.flush()

    _record(
        principal, req,
        action="request.created",
        event_type="request.created",
        after=req.snapshot(),
        data={"title": req.title, "status": req.status, "priority": req.priority},
    )
    db.session.commit()
    logger.info("Request %s created by %s", req.id, principal.id,
                extra={"program_id": req.program_id})
    return req


def update_request(principal, request_id: str, data: dict, program_id: str | None = None) -> Request:
    """
    Edit title/description/priority/fields of a draft.

    Only the creator, admins and program managers may edit; anything past
    ``draft`` changes through transitions only.
    """
    req = _load_request(request_id, program_id)
    access = check_program_access(principal, req.program_id)

    if req.created_by != principal.id and access.effective_role not in _EDITOR_ROLES:
        raise ForbiddenError("Only the creator or a manager can edit this request", reason="not_owner")
    if req.status != "draft":
        raise ConflictError("Only draft requests can be updated")

    cleaned = _validate_data(data, partial=True)
    if not cleaned:
        raise ValidationError("No updatable fields supplied")

    changes = {k: v for k, v in cleaned.items() if getattr(req, k) != v}
    if not changes:
        return req

    before = req.snapshot()
    _apply_change(req, **changes)
    after = req.snapshot()

    changed = sorted(changes)
    _record(
        principal, req,
        action="request.updated",
        event_type="request.updated",
        before=before,
        after=after,
        metadata={"changed": changed},
        data={"changed": changed, "title": req.title},
    )
    if "fields" in changes:
        append_audit_safely(
            action="request.field_edited",
            entity_type="request",
            entity_id=req.id,
            request_id=req.id,
            program_id=req.program_id,
            performed_by=principal.id,
            before={"fields": before["fields"]},
            after={"fields": after["fields"]},
        )
    db.session.commit()
    return req


def assign_request(principal, request_id: str, assignee_id: str, program_id: str | None = None) -> Request:
    """
    Assign a request to a manager or team member of its program.

    Raises:
        ForbiddenError: caller is not a program manager (or admin).
        ConflictError: request is in draft or completed.
        ValidationError: assignee holds no assignable membership.
    """
    assignee_id = require_valid_id(assignee_id, "assignee ID")
    req = _load_request(request_id, program_id)
    check_program_access(principal, req.program_id, [ProgramRole.MANAGER])

    if req.status in _UNASSIGNABLE_STATUSES:
        raise ConflictError(f"Cannot assign a request in {req.status} status")

    membership = get_active_membership(assignee_id, req.program_id)
    if not membership or membership.program_role not in _ASSIGNABLE_ROLES:
        raise ValidationError(
            "Assignee must be an active manager or team member of the program",
            details={"assigned_to": assignee_id},
        )

    previous = req.assigned_to
    if previous == assignee_id:
        return req

    _apply_change(req, assigned_to=assignee_id)
    _record(
        principal, req,
        action="request.assigned",
        event_type="request.assigned",
        before={"assigned_to": previous},
        after={"assigned_to": assignee_id},
        data={"assignedTo": assignee_id, "previousAssignee": previous},
    )
    db.session.commit()
    logger.info("Request %s assigned to %s by %s", req.id, assignee_id, principal.id,
                extra={"program_id": req.program_id})
    return req


# ═════════════════════════════════════════════════════════════════════════════
# Read side
# ═════════════════════════════════════════════════════════════════════════════


def get_request(principal, request_id: str, program_id: str | None = None) -> tuple[Request, ProgramAccess]:
    """Return the request and the caller's access, applying visibility rules."""
    req = _load_request(request_id, program_id)
    access = check_program_access(principal, req.program_id)
    if not _can_view(access, req):
        raise ForbiddenError("You cannot view this request", reason="not_owner")
    return req, access


def list_requests(principal, program_id: str, filters: dict | None = None,
                  page: int = 1, per_page: int = 20) -> dict:
    """
    Paginated requests of one program, newest first.

    Visibility: admin/manager see everything, team members their own and
    assigned requests, clients their own only.
    """
    access = check_program_access(principal, program_id)
    filters = filters or {}

    stmt = select(Request).where(Request.program_id == access.program_id)

    role = access.effective_role
    if role is GlobalRole.CLIENT:
        stmt = stmt.where(Request.created_by == principal.id)
    elif role is GlobalRole.TEAM_MEMBER:
        stmt = stmt.where(or_(Request.created_by == principal.id, Request.assigned_to == principal.id))

    status = filters.get("status")
    if status:
        if status not in REQUEST_STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(REQUEST_STATUSES)}")
        stmt = stmt.where(Request.status == status)

    priority = filters.get("priority")
    if priority:
        if priority not in REQUEST_PRIORITIES:
            raise ValidationError(f"priority must be one of: {', '.join(REQUEST_PRIORITIES)}")
        stmt = stmt.where(Request.priority == priority)

    assigned_to = filters.get("assigned_to")
    if assigned_to:
        stmt = stmt.where(Request.assigned_to == require_valid_id(assigned_to, "assignee ID"))

    search = (filters.get("search") or "").strip()
    if search:
        pattern = f"%{search}%"
        stmt = stmt.where(or_(Request.title.ilike(pattern), Request.description.ilike(pattern)))

    stmt = stmt.order_by(Request.created_at.desc(), Request.id.desc())
    paginated = db.paginate(stmt, page=page, per_page=per_page, error_out=False)
    return {
        "requests": [r.to_dict() for r in paginated.items],
        "total": paginated.total,
        "page": paginated.page,
        "per_page": paginated.per_page,
        "pages": paginated.pages,
    }

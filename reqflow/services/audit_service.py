"""
Audit Ledger queries.

Writing happens through ``reqflow.models.audit`` (write_audit /
append_audit_safely) inside the mutating service. This module only reads.
"""

from datetime import datetime

from sqlalchemy import select

from reqflow.core.exceptions import ValidationError
from reqflow.core.identifiers import require_valid_id
from reqflow.models import db
from reqflow.models.audit import AUDIT_ACTIONS, AUDIT_ENTITY_TYPES, AuditEntry


def _parse_datetime(value, label: str) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"{label} must be an ISO-8601 timestamp", details={label: value}) from None


def _page(stmt, page: int, per_page: int) -> dict:
    paginated = db.paginate(stmt, page=page, per_page=per_page, error_out=False)
    return {
        "entries": [e.to_dict() for e in paginated.items],
        "total": paginated.total,
        "page": paginated.page,
        "per_page": paginated.per_page,
        "pages": paginated.pages,
    }


def list_audit_entries(
    *,
    program_id: str | None = None,
    request_id: str | None = None,
    performed_by: str | None = None,
    action: str | None = None,
    entity_type: str | None = None,
    start=None,
    end=None,
    page: int = 1,
    per_page: int = 50,
) -> dict:
    """
    Filtered audit entries, newest first.

    ``start``/``end`` bound ``created_at`` inclusively and accept datetimes
    or ISO-8601 strings.
    """
    stmt = select(AuditEntry)

    if program_id:
        stmt = stmt.where(AuditEntry.program_id == require_valid_id(program_id, "program ID"))
    if request_id:
        stmt = stmt.where(AuditEntry.request_id == require_valid_id(request_id, "request ID"))
    if performed_by:
        stmt = stmt.where(AuditEntry.performed_by == require_valid_id(performed_by, "user ID"))
    if action:
        if action not in AUDIT_ACTIONS:
            raise ValidationError(f"Unknown audit action: {action}")
        stmt = stmt.where(AuditEntry.action == action)
    if entity_type:
        if entity_type not in AUDIT_ENTITY_TYPES:
            raise ValidationError(f"Unknown entity type: {entity_type}")
        stmt = stmt.where(AuditEntry.entity_type == entity_type)

    start_at = _parse_datetime(start, "start")
    end_at = _parse_datetime(end, "end")
    if start_at and end_at and start_at > end_at:
        raise ValidationError("start must not be after end")
    if start_at:
        stmt = stmt.where(AuditEntry.created_at >= start_at)
    if end_at:
        stmt = stmt.where(AuditEntry.created_at <= end_at)

    stmt = stmt.order_by(AuditEntry.created_at.desc(), AuditEntry.id.desc())
    return _page(stmt, page, per_page)


def request_audit_trail(request_id: str, page: int = 1, per_page: int = 50) -> dict:
    """Audit entries for one request, oldest first (timeline order)."""
    request_id = require_valid_id(request_id, "request ID")
    stmt = (
        select(AuditEntry)
        .where(AuditEntry.request_id == request_id)
        .order_by(AuditEntry.created_at.asc(), AuditEntry.id.asc())
    )
    return _page(stmt, page, per_page)

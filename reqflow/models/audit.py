"""
Request Lifecycle Platform
Audit domain model.

Models:
    - AuditEntry: immutable, append-only record of one mutation.
"""

import logging
from datetime import UTC, datetime

from reqflow.core.identifiers import new_id
from reqflow.models import db

logger = logging.getLogger(__name__)

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {"request", "comment", "attachment"}

AUDIT_ACTIONS = {
    "request.created",
    "request.updated",
    "request.status_changed",
    "request.assigned",
    "request.field_edited",
    "comment.added",
    "comment.deleted",
    "attachment.uploaded",
    "attachment.deleted",
}


class AuditEntry(db.Model):
    """
    Immutable audit trail for every mutation.

    One row per action. ``before``/``after`` carry snapshots of the changed
    state; ``meta`` carries action-specific context (e.g. from/to status).
    Rows are never updated or deleted by the platform.
    """

    __tablename__ = "audit_entries"
    __table_args__ = (
        db.Index("idx_audit_request_ts", "request_id", "created_at"),
        db.Index("idx_audit_program_ts", "program_id", "created_at"),
        db.Index("idx_audit_actor", "performed_by"),
        db.Index("idx_audit_action_ts", "action", "created_at"),
    )

    id = db.Column(db.String(24), primary_key=True, default=new_id)

    action = db.Column(
        db.String(60), nullable=False,
        comment="request.status_changed | request.assigned | …",
    )
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="request | comment | attachment",
    )
    entity_id = db.Column(db.String(24), nullable=False)
    request_id = db.Column(db.String(24), nullable=False)
    program_id = db.Column(db.String(24), nullable=False)
    performed_by = db.Column(db.String(24), nullable=False)

    before = db.Column(db.JSON, nullable=True)
    after = db.Column(db.JSON, nullable=True)
    meta = db.Column("metadata", db.JSON, nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "request_id": self.request_id,
            "program_id": self.program_id,
            "performed_by": self.performed_by,
            "before": self.before,
            "after": self.after,
            "metadata": self.meta or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<AuditEntry {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writers ──────────────────────────────────────────────────────

def write_audit(
    *,
    action: str,
    entity_type: str,
    entity_id: str,
    request_id: str,
    program_id: str,
    performed_by: str,
    before: dict | None = None,
    after: dict | None = None,
    metadata: dict | None = None,
) -> AuditEntry:
    """
    Append a single audit row. Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) AuditEntry instance.
    """
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit action: {action}")
    if entity_type not in AUDIT_ENTITY_TYPES:
        raise ValueError(f"Unknown audit entity type: {entity_type}")

    entry = AuditEntry(
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        request_id=str(request_id),
        program_id=str(program_id),
        performed_by=str(performed_by),
        before=before,
        after=after,
        meta=metadata,
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def append_audit_safely(**kwargs) -> AuditEntry | None:
    """
    Append an audit row inside its own SAVEPOINT.

    A failure rolls back only the savepoint, is logged, and returns None;
    the surrounding business transaction is left intact.
    """
    try:
        with db.session.begin_nested():
            return write_audit(**kwargs)
    except Exception:
        logger.exception(
            "Failed to append audit entry action=%s request=%s",
            kwargs.get("action"), kwargs.get("request_id"),
            extra={"program_id": kwargs.get("program_id")},
        )
        return None

"""
Request Lifecycle Platform
Request domain model.

Models:
    - Request: a work item moving through the approval lifecycle

Constants:
    - REQUEST_STATUSES / INITIAL_STATUS / TERMINAL_STATUSES
    - REQUEST_PRIORITIES
"""

from datetime import datetime, timezone

from reqflow.core.identifiers import new_id
from reqflow.models import db

REQUEST_STATUSES = (
    "draft",
    "submitted",
    "in_review",
    "approved",
    "rejected",
    "completed",
)
INITIAL_STATUS = "draft"
TERMINAL_STATUSES = frozenset({"completed"})

REQUEST_PRIORITIES = ("low", "medium", "high", "urgent")


def _utcnow():
    return datetime.now(timezone.utc)


class Request(db.Model):
    """
    Core work item of a program.

    ``status`` is only changed by the lifecycle service through a
    conditional UPDATE on (status, version); ``version`` increases on every
    mutation so concurrent writers detect each other. ``fields`` is a
    program-defined map the lifecycle engine never interprets.
    """

    __tablename__ = "requests"
    __table_args__ = (
        db.Index("idx_request_program_status", "program_id", "status"),
        db.Index("idx_request_created_by", "created_by"),
        db.Index("idx_request_assigned_to", "assigned_to"),
    )

    id = db.Column(db.String(24), primary_key=True, default=new_id)
    program_id = db.Column(
        db.String(24),
        db.ForeignKey("programs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    status = db.Column(
        db.String(20), nullable=False, default=INITIAL_STATUS,
        comment="draft | submitted | in_review | approved | rejected | completed",
    )
    priority = db.Column(
        db.String(10), nullable=False, default="medium",
        comment="low | medium | high | urgent",
    )
    fields = db.Column(db.JSON, default=dict)

    created_by = db.Column(db.String(24), nullable=False)
    assigned_to = db.Column(db.String(24), nullable=True)

    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def snapshot(self) -> dict:
        """Plain copy of the mutable business fields, for audit before/after."""
        return {
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "priority": self.priority,
            "fields": dict(self.fields or {}),
            "assigned_to": self.assigned_to,
        }

    def to_dict(self):
        return {
            "id": self.id,
            "program_id": self.program_id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "priority": self.priority,
            "fields": self.fields or {},
            "created_by": self.created_by,
            "assigned_to": self.assigned_to,
            "version": self.version,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Request {self.id}: {self.status}>"

"""
Request Lifecycle Platform
Event outbox model.

Models:
    - OutboxEvent: one lifecycle event awaiting (or done with) delivery to
      the automation consumer.

Status flow:
    pending ──deliver ok──▶ sent          (terminal)
    pending ──retries exhausted──▶ failed (terminal until an operator requeues)
"""

from datetime import datetime, timezone

from reqflow.core.identifiers import new_id
from reqflow.models import db

EVENT_TYPES = (
    "request.created",
    "request.updated",
    "request.status_changed",
    "request.assigned",
    "request.deleted",
    "comment.added",
    "comment.deleted",
    "attachment.uploaded",
    "attachment.deleted",
    "report.requested",
)

OUTBOX_STATUSES = ("pending", "sent", "failed")

DEFAULT_MAX_RETRIES = 3


def _utcnow():
    return datetime.now(timezone.utc)


class OutboxEvent(db.Model):
    """
    Durable outbox row, inserted in the same transaction as the mutation
    that produced it.

    ``payload`` is the exact body posted to the consumer and already
    carries ``eventId`` so duplicate deliveries can be dropped downstream.
    """

    __tablename__ = "outbox_events"
    __table_args__ = (
        db.Index("idx_outbox_status_next_retry", "status", "next_retry_at"),
        db.Index("idx_outbox_created", "created_at"),
    )

    id = db.Column(db.String(24), primary_key=True, default=new_id)
    event_type = db.Column(db.String(40), nullable=False)
    payload = db.Column(db.JSON, nullable=False)
    status = db.Column(
        db.String(10), nullable=False, default="pending",
        comment="pending | sent | failed",
    )
    retry_count = db.Column(db.Integer, nullable=False, default=0)
    max_retries = db.Column(db.Integer, nullable=False, default=DEFAULT_MAX_RETRIES)
    last_error = db.Column(db.Text, nullable=True)
    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    next_retry_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    @property
    def request_id(self) -> str | None:
        return (self.payload or {}).get("requestId")

    def to_dict(self):
        return {
            "id": self.id,
            "event_type": self.event_type,
            "payload": self.payload,
            "status": self.status,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "last_error": self.last_error,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<OutboxEvent {self.id}: {self.event_type} [{self.status}]>"

"""
Request Lifecycle Platform
Program domain models.

Models:
    - Program: tenant-like workspace scoping requests and memberships
    - ProgramMembership: a user's role inside one program
"""

from datetime import datetime, timezone

from reqflow.core.identifiers import new_id
from reqflow.core.roles import ProgramRole
from reqflow.models import db


def _utcnow():
    return datetime.now(timezone.utc)


# ── Program ──────────────────────────────────────────────────────────────────


class Program(db.Model):
    """Workspace that owns requests. Created by admins."""

    __tablename__ = "programs"

    id = db.Column(db.String(24), primary_key=True, default=new_id)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    # Submission window, both ends inclusive; either may be open
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)
    archived_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_by = db.Column(db.String(24), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    memberships = db.relationship(
        "ProgramMembership", backref="program", lazy="dynamic",
        cascade="all, delete-orphan",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "is_active": self.is_active,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "archived_at": self.archived_at.isoformat() if self.archived_at else None,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Program {self.id}: {self.name}>"


# ── ProgramMembership ────────────────────────────────────────────────────────


class ProgramMembership(db.Model):
    """
    Bridge between users and programs.

    A user may be a manager in one program and a client in another.
    At most one *active* row exists per (user, program); a role change
    deactivates the current row and inserts a new one.
    """

    __tablename__ = "program_memberships"
    __table_args__ = (
        db.Index(
            "uq_membership_active_user_program", "user_id", "program_id",
            unique=True,
            sqlite_where=db.text("is_active = 1"),
            postgresql_where=db.text("is_active"),
        ),
        db.Index("idx_membership_program", "program_id"),
        db.Index("idx_membership_user", "user_id"),
    )

    id = db.Column(db.String(24), primary_key=True, default=new_id)
    user_id = db.Column(db.String(24), nullable=False)
    program_id = db.Column(
        db.String(24),
        db.ForeignKey("programs.id", ondelete="CASCADE"),
        nullable=False,
    )
    role = db.Column(
        db.String(20), nullable=False,
        comment="manager | team_member | client",
    )
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    added_by = db.Column(db.String(24), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    deactivated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    @property
    def program_role(self) -> ProgramRole | None:
        return ProgramRole.parse(self.role)

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "program_id": self.program_id,
            "role": self.role,
            "is_active": self.is_active,
            "added_by": self.added_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "deactivated_at": self.deactivated_at.isoformat() if self.deactivated_at else None,
        }

    def __repr__(self):
        return f"<ProgramMembership {self.user_id}@{self.program_id}: {self.role}>"

"""
Membership Directory — maps (user, program) to a program role.

Rules:
  - At most one active membership per (user, program).
  - Memberships are never edited in place: a role change deactivates the
    current row and inserts a new one.
  - db.session.commit() happens in the mutating functions of this module.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select

from reqflow.core.exceptions import ConflictError, NotFoundError, ValidationError
from reqflow.core.identifiers import require_valid_id
from reqflow.core.roles import PROGRAM_ROLES, ProgramRole
from reqflow.models import db
from reqflow.models.program import Program, ProgramMembership

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_role(role) -> ProgramRole:
    parsed = ProgramRole.parse(role)
    if parsed not in PROGRAM_ROLES:
        raise ValidationError(
            f"role must be one of: {', '.join(sorted(r.value for r in PROGRAM_ROLES))}",
            details={"role": role},
        )
    return parsed


def _require_program(program_id: str) -> Program:
    program = db.session.get(Program, program_id)
    if not program:
        raise NotFoundError(resource="Program", resource_id=program_id)
    return program


def get_active_membership(user_id: str, program_id: str) -> ProgramMembership | None:
    """Return the active membership for (user, program) or None."""
    return db.session.execute(
        select(ProgramMembership).where(
            ProgramMembership.user_id == user_id,
            ProgramMembership.program_id == program_id,
            ProgramMembership.is_active.is_(True),
        )
    ).scalar_one_or_none()


def list_members(program_id: str, include_inactive: bool = False) -> list[dict]:
    program_id = require_valid_id(program_id, "program ID")
    _require_program(program_id)
    stmt = select(ProgramMembership).where(ProgramMembership.program_id == program_id)
    if not include_inactive:
        stmt = stmt.where(ProgramMembership.is_active.is_(True))
    stmt = stmt.order_by(ProgramMembership.created_at)
    return [m.to_dict() for m in db.session.execute(stmt).scalars()]


def add_member(program_id: str, user_id: str, role, added_by: str | None = None) -> dict:
    """
    Grant ``user_id`` a role in ``program_id``.

    Raises:
        ValidationError: malformed ids or unknown role.
        NotFoundError: program does not exist.
        ConflictError: program is archived, or the user already holds an
            active membership.
    """
    program_id = require_valid_id(program_id, "program ID")
    user_id = require_valid_id(user_id, "user ID")
    parsed = _parse_role(role)
    if not _require_program(program_id).is_active:
        raise ConflictError(f"Program {program_id} is archived")

    if get_active_membership(user_id, program_id):
        raise ConflictError(f"User {user_id} is already an active member of program {program_id}")

    membership = ProgramMembership(
        user_id=user_id,
        program_id=program_id,
        role=parsed.value,
        added_by=added_by,
        is_active=True,
    )
    db.session.add(membership)
    db.session.commit()
    logger.info("Added %s as %s to program %s", user_id, parsed.value, program_id,
                extra={"program_id": program_id})
    return membership.to_dict()


def change_member_role(program_id: str, user_id: str, role, changed_by: str | None = None) -> dict:
    """Replace the active membership with a new row carrying ``role``."""
    program_id = require_valid_id(program_id, "program ID")
    user_id = require_valid_id(user_id, "user ID")
    parsed = _parse_role(role)

    current = get_active_membership(user_id, program_id)
    if not current:
        raise NotFoundError(resource="ProgramMembership", resource_id=f"{user_id}@{program_id}")
    if current.role == parsed.value:
        return current.to_dict()

    current.is_active = False
    current.deactivated_at = _utcnow()
    # Deactivation must reach the DB before the partial unique index sees the new row
    db.session.flush()

    replacement = ProgramMembership(
        user_id=user_id,
        program_id=program_id,
        role=parsed.value,
        added_by=changed_by,
        is_active=True,
    )
    db.session.add(replacement)
    db.session.commit()
    logger.info("Changed %s in program %s: %s -> %s", user_id, program_id, current.role,
                parsed.value, extra={"program_id": program_id})
    return replacement.to_dict()


def deactivate_member(program_id: str, user_id: str) -> dict:
    program_id = require_valid_id(program_id, "program ID")
    user_id = require_valid_id(user_id, "user ID")

    current = get_active_membership(user_id, program_id)
    if not current:
        raise NotFoundError(resource="ProgramMembership", resource_id=f"{user_id}@{program_id}")

    current.is_active = False
    current.deactivated_at = _utcnow()
    db.session.commit()
    logger.info("Deactivated %s in program %s", user_id, program_id,
                extra={"program_id": program_id})
    return current.to_dict()

"""
Program service — program creation, lookup and archiving.

Programs are created by admins; everyone else sees a program through
the Access Guard only. An archived program, or one outside its
submission window, stops accepting new and resubmitted requests.
"""

import logging
from datetime import date, datetime, timezone

from reqflow.core.exceptions import ConflictError, ForbiddenError, NotFoundError, ValidationError
from reqflow.core.identifiers import require_valid_id
from reqflow.models import db
from reqflow.models.program import Program

logger = logging.getLogger(__name__)

NAME_MIN, NAME_MAX = 3, 200


def _parse_date(value, label):
    """YYYY-MM-DD or date → date; empty → None; anything else → ValidationError."""
    if value in (None, ""):
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise ValidationError(f"Invalid {label}", details={label: "must be a YYYY-MM-DD date"}) from None


def create_program(principal, data: dict) -> Program:
    if not principal.is_admin:
        raise ForbiddenError("Only admins can create programs", reason="global_role")

    name = (data.get("name") or "").strip() if isinstance(data, dict) else ""
    if not (NAME_MIN <= len(name) <= NAME_MAX):
        raise ValidationError(
            f"name must be {NAME_MIN}-{NAME_MAX} characters",
            details={"name": data.get("name") if isinstance(data, dict) else None},
        )

    start_date = _parse_date(data.get("start_date"), "start_date")
    end_date = _parse_date(data.get("end_date"), "end_date")
    if start_date and end_date and start_date > end_date:
        raise ValidationError(
            "start_date must not be after end_date",
            details={"start_date": start_date.isoformat(), "end_date": end_date.isoformat()},
        )

    program = Program(
        name=name,
        description=data.get("description") or "",
        start_date=start_date,
        end_date=end_date,
        created_by=principal.id,
        is_active=True,
    )
    db.session.add(program)
    db.session.commit()
    logger.info("Program %s created by %s", program.id, principal.id,
                extra={"program_id": program.id})
    return program


def get_program(program_id: str) -> Program:
    program_id = require_valid_id(program_id, "program ID")
    program = db.session.get(Program, program_id)
    if not program:
        raise NotFoundError(resource="Program", resource_id=program_id)
    return program


def archive_program(principal, program_id: str) -> Program:
    """
    Archive a program. Soft state change: requests and memberships stay.

    Raises:
        ForbiddenError: caller is not an admin.
        NotFoundError: no such program.
        ConflictError: already archived.
    """
    if not principal.is_admin:
        raise ForbiddenError("Only admins can archive programs", reason="global_role")

    program = get_program(program_id)
    if not program.is_active:
        raise ConflictError("Program is already archived")

    program.is_active = False
    program.archived_at = datetime.now(timezone.utc)
    db.session.commit()
    logger.info("Program %s archived by %s", program.id, principal.id,
                extra={"program_id": program.id})
    return program


def ensure_accepting_requests(program: Program, today: date | None = None) -> None:
    """
    Gate for creating and (re)submitting requests.

    Raises:
        ConflictError: the program is archived.
        ValidationError: today is outside [start_date, end_date].
    """
    if not program.is_active:
        raise ConflictError("Program is archived and not accepting submissions")

    today = today or datetime.now(timezone.utc).date()
    if program.start_date and program.start_date > today:
        raise ValidationError(
            "Program has not started accepting submissions yet",
            details={"start_date": program.start_date.isoformat()},
        )
    if program.end_date and program.end_date < today:
        raise ValidationError(
            "Program submission period has ended",
            details={"end_date": program.end_date.isoformat()},
        )

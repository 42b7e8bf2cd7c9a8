"""
Access Guard — program-scoped authorization.

Single choke point deciding whether a principal may act inside a program,
and with which effective role.

Rules:
  - program_id must be a well-formed id (ValidationError otherwise).
  - Admin principals are granted every program, with no membership lookup.
  - Everyone else needs an active ProgramMembership; an optional set of
    required program roles narrows it further.

Usage:
    from reqflow.services.access_guard import check_program_access

    access = check_program_access(principal, program_id, [ProgramRole.MANAGER])
    access.effective_role   # GlobalRole used by the transition tables
"""

import functools
import logging
from dataclasses import dataclass

from flask import g

from reqflow.core.exceptions import ForbiddenError
from reqflow.core.identifiers import require_valid_id
from reqflow.core.roles import GlobalRole, ProgramRole
from reqflow.middleware.principal import current_principal
from reqflow.services.membership_service import get_active_membership

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgramAccess:
    """Result of a successful access check, scoped to one program."""

    program_id: str
    user_id: str
    role: ProgramRole | None
    is_admin: bool = False

    @property
    def effective_role(self) -> GlobalRole:
        if self.is_admin:
            return GlobalRole.ADMIN
        return self.role.as_global()

    def to_dict(self) -> dict:
        return {
            "program_id": self.program_id,
            "user_id": self.user_id,
            "role": self.role.value if self.role else None,
            "is_admin": self.is_admin,
            "effective_role": self.effective_role.value,
        }


def check_program_access(principal, program_id, required_roles=None) -> ProgramAccess:
    """
    Decide whether ``principal`` may act in ``program_id``.

    Args:
        principal: Authenticated Principal (id + global role).
        program_id: Target program id.
        required_roles: Optional iterable of ProgramRole; empty means any
                        active membership suffices. Ignored for admins.

    Returns:
        ProgramAccess describing the granted scope.

    Raises:
        ValidationError: program_id is malformed.
        ForbiddenError: no active membership, or role not in required_roles.
    """
    program_id = require_valid_id(program_id, "program ID")

    if principal.global_role is GlobalRole.ADMIN:
        return ProgramAccess(program_id=program_id, user_id=principal.id, role=None, is_admin=True)

    membership = get_active_membership(principal.id, program_id)
    role = membership.program_role if membership else None
    if role is None:
        logger.warning(
            "User %s denied access to program %s — not a member",
            principal.id, program_id, extra={"program_id": program_id},
        )
        raise ForbiddenError("No access to this program", reason="program_access")

    required = {ProgramRole(r) for r in (required_roles or ())}
    if required and role not in required:
        logger.warning(
            "User %s denied in program %s — role %s not in %s",
            principal.id, program_id, role.value, sorted(r.value for r in required),
            extra={"program_id": program_id},
        )
        raise ForbiddenError("Insufficient program permissions", reason="program_role")

    return ProgramAccess(program_id=program_id, user_id=principal.id, role=role)


def require_program_access(param_name: str = "program_id", roles=None):
    """
    Decorator: run the Access Guard for the program named by the route
    parameter and expose the result as ``g.program_access``.

    Usage:
        @bp.route("/programs/<program_id>/requests")
        @require_program_access()
        def list_requests(program_id):
            ...
    """
    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            principal = current_principal()
            g.program_access = check_program_access(principal, kwargs.get(param_name), roles)
            return f(*args, **kwargs)
        return decorated
    return decorator

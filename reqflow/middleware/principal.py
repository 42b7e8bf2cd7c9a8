"""
Principal middleware — Parses the bearer JWT and sets ``g.principal``.

Tokens are issued by the external authentication service; this module only
verifies them and reads the identity claims.

Token payload (access):
{
    "sub": <24-hex user id>,
    "role": "admin" | "manager" | "team_member" | "client",
    "name": <display name>,
    "type": "access",
    "iat": <issued_at>,
    "exp": <expires_at>
}

A missing, expired or malformed token leaves ``g.principal = None``; endpoints
that need an identity call ``current_principal()`` which raises
AuthenticationError.
"""

import functools
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt
from flask import current_app, g, request

from reqflow.core.exceptions import AuthenticationError, ForbiddenError
from reqflow.core.identifiers import is_valid_id
from reqflow.core.roles import GlobalRole

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
DEFAULT_ACCESS_EXPIRES = 900       # 15 minutes

# Paths that never carry a user token
SKIP_PREFIXES = (
    "/api/v1/health",
    "/api/v1/internal/",
)


@dataclass(frozen=True)
class Principal:
    """Authenticated identity as supplied by the auth collaborator."""

    id: str
    global_role: GlobalRole
    name: str = ""

    @property
    def is_admin(self) -> bool:
        return self.global_role is GlobalRole.ADMIN


def _get_secret():
    return current_app.config.get("JWT_SECRET_KEY") or current_app.config["SECRET_KEY"]


def issue_token(user_id: str, role: str, name: str = "", expires_in: int | None = None) -> str:
    """Sign an access token. Used by tests and local tooling."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "role": role,
        "name": name,
        "type": "access",
        "iat": now,
        "exp": now + timedelta(seconds=expires_in or DEFAULT_ACCESS_EXPIRES),
        "jti": str(uuid.uuid4()),
    }
    return jwt.encode(payload, _get_secret(), algorithm=ALGORITHM)


def decode_principal(token: str) -> Principal:
    """
    Verify ``token`` and build a Principal.

    Raises:
        jwt.InvalidTokenError: bad signature, expired, wrong type,
                               or claims that do not describe a principal.
    """
    payload = jwt.decode(token, _get_secret(), algorithms=[ALGORITHM])
    if payload.get("type") != "access":
        raise jwt.InvalidTokenError("Not an access token")

    user_id = payload.get("sub")
    role = GlobalRole.parse(payload.get("role"))
    if not is_valid_id(user_id) or role is None:
        raise jwt.InvalidTokenError("Token does not describe a principal")

    return Principal(id=user_id.lower(), global_role=role, name=payload.get("name") or "")


def current_principal() -> Principal:
    """Return the request principal or raise AuthenticationError."""
    principal = getattr(g, "principal", None)
    if principal is None:
        raise AuthenticationError("Authentication required")
    return principal


def init_principal_middleware(app):
    """Register the token parser as a before_request hook."""

    @app.before_request
    def _load_principal():
        g.principal = None

        path = request.path
        if not path.startswith("/api/v1/"):
            return
        for prefix in SKIP_PREFIXES:
            if path.startswith(prefix):
                return

        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return

        token = auth_header[7:]
        try:
            g.principal = decode_principal(token)
        except jwt.ExpiredSignatureError:
            logger.debug("Expired token on %s", path)
        except jwt.InvalidTokenError as exc:
            logger.info("Rejected token on %s: %s", path, exc)


def require_global_role(*roles):
    """
    Decorator: the principal's global role must be one of ``roles``.

    Usage:
        @bp.route("/audit")
        @require_global_role(GlobalRole.ADMIN)
        def list_audit():
            ...
    """
    allowed = frozenset(GlobalRole(r) for r in roles)

    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            principal = current_principal()
            if principal.global_role not in allowed:
                raise ForbiddenError(
                    f"Requires global role: {', '.join(sorted(r.value for r in allowed))}",
                    reason="global_role",
                )
            return f(*args, **kwargs)
        return decorated
    return decorator

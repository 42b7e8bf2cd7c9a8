"""
Entity identifiers.

Every id in the platform is a 24-character hex string. Ids are checked
for shape before any query so a malformed id becomes a ValidationError
instead of a not-found or an authorization failure.
"""

import re
import uuid

from reqflow.core.exceptions import ValidationError

_ID_RE = re.compile(r"[0-9a-fA-F]{24}")


def new_id() -> str:
    """Return a fresh lowercase 24-hex identifier."""
    return uuid.uuid4().hex[:24]


def is_valid_id(value) -> bool:
    return isinstance(value, str) and _ID_RE.fullmatch(value) is not None


def require_valid_id(value, label: str = "id") -> str:
    """Return the normalised id or raise ValidationError."""
    if not is_valid_id(value):
        raise ValidationError(f"Invalid {label}", details={label: "must be a 24-character hex id"})
    return value.lower()

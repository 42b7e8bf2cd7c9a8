"""
Platform-wide exception hierarchy.

Services raise these; the application factory registers one handler per
type so every blueprint answers with the same status codes and body shape.

Usage:
    from reqflow.core.exceptions import NotFoundError, ForbiddenError

    raise NotFoundError(resource="Request", resource_id=request_id)
    raise ForbiddenError("No access to this program", reason="program_access")
"""


class ValidationError(Exception):
    """Raised when input is malformed or violates a field rule.

    Covers malformed identifiers as well: a bad id is a client error, not
    an authorization failure and not a missing record.

    Maps to HTTP 400.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class RequiredFieldError(ValidationError):
    """Raised when a mandatory body field is absent.

    Maps to HTTP 400 with its own error code.
    """

    def __init__(self, field: str) -> None:
        self.field = field
        super().__init__(f"{field} is required", details={field: "required"})


class NotFoundError(Exception):
    """Raised when a referenced entity does not exist.

    Maps to HTTP 404.

    Args:
        resource: Human-readable entity name (e.g. "Request", "Program").
        resource_id: The id that was looked up. Included in logs and message.
    """

    def __init__(self, resource: str, resource_id: str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ForbiddenError(Exception):
    """Raised when an authenticated principal is not allowed to act.

    ``reason`` is a stable machine-readable code so clients can tell the
    denial kinds apart:

        program_access      no active membership in the program
        program_role        membership role not in the required set
        global_role         action reserved to another global role
        invalid_transition  the status edge does not exist
        role_not_permitted  the edge exists but not for this role
        not_owner           client acting on a request they did not create

    Maps to HTTP 403.
    """

    def __init__(self, message: str, reason: str = "forbidden") -> None:
        self.reason = reason
        super().__init__(message)


class ConflictError(Exception):
    """Raised when a mutation collides with the current state of a record.

    Covers optimistic-concurrency misses (stale status/version) and
    duplicate active records. ``retryable`` tells the caller whether
    re-reading and retrying can succeed.

    Maps to HTTP 409.
    """

    def __init__(self, message: str, retryable: bool = False) -> None:
        self.retryable = retryable
        super().__init__(message)


class AuthenticationError(Exception):
    """Raised when an endpoint needs a principal and none was supplied.

    Maps to HTTP 401.
    """


class DeliveryError(Exception):
    """Raised inside the outbox dispatcher when delivery cannot be attempted.

    Never propagated to the caller of a lifecycle operation; surfaced to
    operators through logs and the ``failed`` outbox state only.
    """

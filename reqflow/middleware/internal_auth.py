"""
Service-to-service authentication for the internal API.

The automation system calls ``/api/v1/internal/*`` with the shared key in
the ``X-Api-Key`` header. The key is compared in constant time; an unset
INTERNAL_API_KEY rejects every call.

Usage:
    @internal_bp.route("/internal/requests/<request_id>/transition", methods=["PATCH"])
    @require_internal_key
    def transition(request_id):
        ...
"""

import functools
import hmac
import logging

from flask import current_app, request

from reqflow.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def _get_api_key_from_request() -> str:
    return request.headers.get("X-Api-Key", "").strip()


def is_valid_internal_key(candidate: str) -> bool:
    expected = current_app.config.get("INTERNAL_API_KEY") or ""
    if not expected or not candidate:
        return False
    return hmac.compare_digest(candidate.encode(), expected.encode())


def require_internal_key(f):
    """Decorator: reject the call with 401 unless X-Api-Key matches."""

    @functools.wraps(f)
    def decorated(*args, **kwargs):
        if not is_valid_internal_key(_get_api_key_from_request()):
            logger.warning("Rejected internal call to %s from %s", request.path, request.remote_addr)
            return api_error(E.UNAUTHENTICATED, "Invalid or missing API key", status=401)
        return f(*args, **kwargs)

    return decorated

"""
Internal service API — called by the automation system, not by users.

Authenticated with the shared X-Api-Key; no bearer token.

Endpoints:
    GET   /api/v1/internal/health                          — key check
    PATCH /api/v1/internal/requests/<rid>/transition       — { status, performed_by }
"""

from flask import Blueprint, jsonify

from reqflow.blueprints import get_json_body
from reqflow.core.exceptions import RequiredFieldError
from reqflow.core.identifiers import require_valid_id
from reqflow.core.roles import GlobalRole
from reqflow.middleware.internal_auth import require_internal_key
from reqflow.middleware.principal import Principal
from reqflow.services.lifecycle import transition_request

internal_bp = Blueprint("internal", __name__, url_prefix="/api/v1/internal")

AUTOMATION_NAME = "automation"


@internal_bp.route("/health", methods=["GET"])
@require_internal_key
def internal_health():
    return jsonify({"status": "ok"})


@internal_bp.route("/requests/<request_id>/transition", methods=["PATCH"])
@require_internal_key
def internal_transition(request_id):
    """
    Transition a request on behalf of ``performed_by``.

    The automation acts with the admin role, so the transition table still
    applies but program membership does not.
    """
    data = get_json_body()
    status = data.get("status")
    if not status:
        raise RequiredFieldError("status")
    if not data.get("performed_by"):
        raise RequiredFieldError("performed_by")
    performed_by = require_valid_id(data["performed_by"], "performed_by")

    principal = Principal(id=performed_by, global_role=GlobalRole.ADMIN, name=AUTOMATION_NAME)
    req = transition_request(principal, request_id, status)
    return jsonify(req.to_dict())

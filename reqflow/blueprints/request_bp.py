"""
Request blueprint — the HTTP face of the lifecycle service.

Endpoints:
    POST  /api/v1/programs/<pid>/requests                      — create draft
    GET   /api/v1/programs/<pid>/requests                      — list (scoped by role)
    GET   /api/v1/programs/<pid>/requests/<rid>                — detail
    PATCH /api/v1/programs/<pid>/requests/<rid>                — edit draft
    PATCH /api/v1/programs/<pid>/requests/<rid>/transition     — { status }
    PATCH /api/v1/programs/<pid>/requests/<rid>/assign         — { assigned_to }
    GET   /api/v1/programs/<pid>/requests/<rid>/transitions    — targets open to the caller
    GET   /api/v1/programs/<pid>/requests/<rid>/audit          — request audit trail
"""

from flask import Blueprint, jsonify, request

from reqflow.blueprints import get_json_body, get_pagination
from reqflow.core.exceptions import RequiredFieldError
from reqflow.middleware.principal import current_principal
from reqflow.services import lifecycle
from reqflow.services.audit_service import request_audit_trail
from reqflow.services.transition_authority import available_transitions

request_bp = Blueprint("request", __name__, url_prefix="/api/v1")


@request_bp.route("/programs/<program_id>/requests", methods=["POST"])
def create_request(program_id):
    """Body: { title, description?, priority?, fields? }"""
    req = lifecycle.create_request(current_principal(), program_id, get_json_body())
    return jsonify(req.to_dict()), 201


@request_bp.route("/programs/<program_id>/requests", methods=["GET"])
def list_requests(program_id):
    """
    Query params: status, priority, assigned_to, search, page, per_page
    """
    page, per_page = get_pagination()
    filters = {
        "status": request.args.get("status"),
        "priority": request.args.get("priority"),
        "assigned_to": request.args.get("assigned_to"),
        "search": request.args.get("search"),
    }
    return jsonify(lifecycle.list_requests(
        current_principal(), program_id, filters, page=page, per_page=per_page,
    ))


@request_bp.route("/programs/<program_id>/requests/<request_id>", methods=["GET"])
def get_request(program_id, request_id):
    req, _access = lifecycle.get_request(current_principal(), request_id, program_id=program_id)
    return jsonify(req.to_dict())


@request_bp.route("/programs/<program_id>/requests/<request_id>", methods=["PATCH"])
def update_request(program_id, request_id):
    req = lifecycle.update_request(
        current_principal(), request_id, get_json_body(), program_id=program_id,
    )
    return jsonify(req.to_dict())


@request_bp.route("/programs/<program_id>/requests/<request_id>/transition", methods=["PATCH"])
def transition_request(program_id, request_id):
    """Body: { status }"""
    data = get_json_body()
    status = data.get("status")
    if not status:
        raise RequiredFieldError("status")
    req = lifecycle.transition_request(
        current_principal(), request_id, status, program_id=program_id,
    )
    return jsonify(req.to_dict())


@request_bp.route("/programs/<program_id>/requests/<request_id>/assign", methods=["PATCH"])
def assign_request(program_id, request_id):
    """Body: { assigned_to }"""
    data = get_json_body()
    assignee = data.get("assigned_to")
    if not assignee:
        raise RequiredFieldError("assigned_to")
    req = lifecycle.assign_request(
        current_principal(), request_id, assignee, program_id=program_id,
    )
    return jsonify(req.to_dict())


@request_bp.route("/programs/<program_id>/requests/<request_id>/transitions", methods=["GET"])
def list_available_transitions(program_id, request_id):
    req, access = lifecycle.get_request(current_principal(), request_id, program_id=program_id)
    return jsonify({
        "request_id": req.id,
        "status": req.status,
        "role": access.effective_role.value,
        "transitions": available_transitions(req.status, access.effective_role),
    })


@request_bp.route("/programs/<program_id>/requests/<request_id>/audit", methods=["GET"])
def get_request_audit(program_id, request_id):
    req, _access = lifecycle.get_request(current_principal(), request_id, program_id=program_id)
    page, per_page = get_pagination(default_per_page=50)
    return jsonify(request_audit_trail(req.id, page=page, per_page=per_page))

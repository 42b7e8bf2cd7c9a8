"""
Program blueprint.

Endpoints:
    POST   /api/v1/programs                              — create program (admin)
    GET    /api/v1/programs/<pid>                        — program detail (members)
    POST   /api/v1/programs/<pid>/archive                — archive program (admin)
    GET    /api/v1/programs/<pid>/members                — list memberships
    POST   /api/v1/programs/<pid>/members                — add member (admin)
    PUT    /api/v1/programs/<pid>/members/<uid>          — change role (admin)
    DELETE /api/v1/programs/<pid>/members/<uid>          — deactivate (admin)
    GET    /api/v1/programs/<pid>/access                 — caller's access in the program
"""

from flask import Blueprint, g, jsonify, request

from reqflow.blueprints import get_json_body
from reqflow.core.roles import GlobalRole
from reqflow.middleware.principal import current_principal, require_global_role
from reqflow.services import membership_service, program_service
from reqflow.services.access_guard import require_program_access

program_bp = Blueprint("program", __name__, url_prefix="/api/v1")


# ── Programs ─────────────────────────────────────────────────────────────────

@program_bp.route("/programs", methods=["POST"])
def create_program():
    """Body: { name, description?, start_date?, end_date? }"""
    program = program_service.create_program(current_principal(), get_json_body())
    return jsonify(program.to_dict()), 201


@program_bp.route("/programs/<program_id>", methods=["GET"])
@require_program_access()
def get_program(program_id):
    return jsonify(program_service.get_program(program_id).to_dict())


@program_bp.route("/programs/<program_id>/archive", methods=["POST"])
def archive_program(program_id):
    program = program_service.archive_program(current_principal(), program_id)
    return jsonify(program.to_dict())


@program_bp.route("/programs/<program_id>/access", methods=["GET"])
@require_program_access()
def get_access(program_id):
    return jsonify(g.program_access.to_dict())


# ── Members ──────────────────────────────────────────────────────────────────

@program_bp.route("/programs/<program_id>/members", methods=["GET"])
@require_program_access()
def list_members(program_id):
    include_inactive = request.args.get("include_inactive", "false").lower() == "true"
    members = membership_service.list_members(program_id, include_inactive=include_inactive)
    return jsonify({"members": members, "total": len(members)})


@program_bp.route("/programs/<program_id>/members", methods=["POST"])
@require_global_role(GlobalRole.ADMIN)
def add_member(program_id):
    """Body: { user_id, role }"""
    data = get_json_body()
    membership = membership_service.add_member(
        program_id, data.get("user_id"), data.get("role"),
        added_by=current_principal().id,
    )
    return jsonify(membership), 201


@program_bp.route("/programs/<program_id>/members/<user_id>", methods=["PUT"])
@require_global_role(GlobalRole.ADMIN)
def change_member_role(program_id, user_id):
    """Body: { role }"""
    data = get_json_body()
    membership = membership_service.change_member_role(
        program_id, user_id, data.get("role"),
        changed_by=current_principal().id,
    )
    return jsonify(membership)


@program_bp.route("/programs/<program_id>/members/<user_id>", methods=["DELETE"])
@require_global_role(GlobalRole.ADMIN)
def remove_member(program_id, user_id):
    return jsonify(membership_service.deactivate_member(program_id, user_id))

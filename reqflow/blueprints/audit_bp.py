"""
Request Lifecycle Platform
Audit blueprint.

Endpoints:
    GET  /api/v1/audit    — list / filter audit entries (admin)
"""

from flask import Blueprint, jsonify, request

from reqflow.blueprints import get_pagination
from reqflow.core.roles import GlobalRole
from reqflow.middleware.principal import require_global_role
from reqflow.services.audit_service import list_audit_entries

audit_bp = Blueprint("audit", __name__, url_prefix="/api/v1")


@audit_bp.route("/audit", methods=["GET"])
@require_global_role(GlobalRole.ADMIN)
def list_audit():
    """
    Return paginated audit entries, newest first.

    Query params:
        program_id    — filter by program
        request_id    — filter by request
        performed_by  — filter by actor
        action        — exact action (request.status_changed, ...)
        entity_type   — request | comment | attachment
        start, end    — ISO-8601 bounds on created_at
        page          — page number (default 1)
        per_page      — items per page (default 50, max 200)
    """
    page, per_page = get_pagination(default_per_page=50)
    return jsonify(list_audit_entries(
        program_id=request.args.get("program_id"),
        request_id=request.args.get("request_id"),
        performed_by=request.args.get("performed_by"),
        action=request.args.get("action"),
        entity_type=request.args.get("entity_type"),
        start=request.args.get("start"),
        end=request.args.get("end"),
        page=page,
        per_page=per_page,
    ))

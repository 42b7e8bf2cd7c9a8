"""
Outbox operations blueprint (admin).

Endpoints:
    GET  /api/v1/admin/outbox                     — list events (?status=)
    GET  /api/v1/admin/outbox/stats               — counts per status
    POST /api/v1/admin/outbox/<eid>/requeue       — failed → pending
    POST /api/v1/admin/outbox/dispatch            — run the dispatcher job now
    GET  /api/v1/admin/jobs                       — scheduler jobs and last runs
"""

from flask import Blueprint, jsonify, request

from reqflow.blueprints import get_pagination
from reqflow.core.roles import GlobalRole
from reqflow.middleware.principal import require_global_role
from reqflow.services import outbox_service
from reqflow.services.scheduler_service import SchedulerService

outbox_bp = Blueprint("outbox", __name__, url_prefix="/api/v1/admin")


@outbox_bp.route("/outbox", methods=["GET"])
@require_global_role(GlobalRole.ADMIN)
def list_outbox():
    page, per_page = get_pagination()
    return jsonify(outbox_service.list_events(
        status=request.args.get("status") or None, page=page, per_page=per_page,
    ))


@outbox_bp.route("/outbox/stats", methods=["GET"])
@require_global_role(GlobalRole.ADMIN)
def outbox_stats():
    return jsonify(outbox_service.outbox_stats())


@outbox_bp.route("/outbox/<event_id>/requeue", methods=["POST"])
@require_global_role(GlobalRole.ADMIN)
def requeue(event_id):
    return jsonify(outbox_service.requeue_failed(event_id))


@outbox_bp.route("/outbox/dispatch", methods=["POST"])
@require_global_role(GlobalRole.ADMIN)
def dispatch_now():
    return jsonify(SchedulerService.run_job("outbox_dispatcher"))


@outbox_bp.route("/jobs", methods=["GET"])
@require_global_role(GlobalRole.ADMIN)
def list_jobs():
    return jsonify({"jobs": SchedulerService.list_jobs(), "running": SchedulerService.is_running()})

"""
Health check blueprint.

Endpoints:
    GET /api/v1/health        — simple 200 for load balancers
    GET /api/v1/health/live   — database, outbox backlog and scheduler status
"""

import logging
import time

from flask import Blueprint, jsonify

from reqflow.models import db
from reqflow.services.outbox_service import outbox_stats
from reqflow.services.scheduler_service import SchedulerService

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")


@health_bp.route("", methods=["GET"])
def health():
    """Simple readiness check — always 200 if app is running."""
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Detailed liveness check with dependency status."""
    checks = {}
    overall = True

    # ── Database ─────────────────────────────────────────────────────
    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
    except Exception as exc:
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check — database failed: %s", exc)

    # ── Outbox backlog ───────────────────────────────────────────────
    if overall:
        try:
            checks["outbox"] = {"status": "ok", **outbox_stats()}
        except Exception as exc:
            checks["outbox"] = {"status": "error", "detail": str(exc)}
            logger.error("Health check — outbox query failed: %s", exc)

    checks["scheduler"] = {"status": "running" if SchedulerService.is_running() else "stopped"}

    return jsonify({"status": "ok" if overall else "degraded", "checks": checks}), (200 if overall else 503)

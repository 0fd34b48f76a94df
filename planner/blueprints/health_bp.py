"""
Health check blueprint.

Endpoints:
    GET /api/health/ready  — simple 200 for load balancers
    GET /api/health/live   — database status, baseline presence, merge locks held
"""

import logging
import time

from flask import Blueprint, current_app, jsonify

from planner.models import db
from planner.services.merge_lock import merge_locks
from planner.services.scenario_store import get_baseline

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/health")


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Simple readiness probe — always 200 if app is running."""
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

    # ── Baseline scenario ────────────────────────────────────────────
    if overall:
        baseline = get_baseline()
        if baseline:
            checks["baseline"] = {"status": "ok", "scenario_id": baseline.id}
        else:
            checks["baseline"] = {"status": "missing"}
            overall = False

    # ── Merge locks ──────────────────────────────────────────────────
    checks["merge_locks"] = {"held": merge_locks.held()}

    checks["app"] = {
        "name": "Capacity Planner",
        "debug": current_app.debug,
        "testing": current_app.testing,
    }

    status_code = 200 if overall else 503
    return jsonify({
        "status": "healthy" if overall else "degraded",
        "checks": checks,
    }), status_code

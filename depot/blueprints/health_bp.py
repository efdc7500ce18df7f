"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  — simple 200 for load balancers
    GET /api/v1/health/live   — detailed system health (DB, shared backend, sync)
"""

import logging
import time

from flask import Blueprint, current_app, jsonify

from depot.models import db
from depot.services.runtime import get_runtime

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")


@health_bp.route("", methods=["GET"])
@health_bp.route("/ready", methods=["GET"])
def ready():
    """Liveness check; always 200 if the app is running."""
    return jsonify({"status": "ok", "app": "Depot M&R Platform"}), 200


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

    # ── Shared backend ───────────────────────────────────────────────
    rt = get_runtime()
    if rt.mirror is None:
        checks["shared_backend"] = {"status": "skipped", "detail": "local-only mode"}
    else:
        t0 = time.perf_counter()
        reachable = rt.mirror.ping()
        ms = (time.perf_counter() - t0) * 1000
        # Shared backend outages degrade to local writes; don't fail overall health
        checks["shared_backend"] = {
            "status": "ok" if reachable else "error",
            "latency_ms": round(ms, 1),
        }

    # ── Sync ─────────────────────────────────────────────────────────
    pending = rt.reconciler.pending()
    checks["sync"] = {
        "mode": rt.mode,
        "pending_writes": sum(len(ids) for ids in pending.values()),
    }

    checks["app"] = {
        "name": "Depot M&R Platform",
        "debug": current_app.debug,
        "testing": current_app.testing,
    }

    status_code = 200 if overall else 503
    return jsonify({
        "status": "healthy" if overall else "degraded",
        "checks": checks,
    }), status_code

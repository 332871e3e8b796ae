"""
Health check blueprint.

Endpoints:
    GET /api/v1/health       : app name + ok
    GET /api/v1/health/ready : simple 200 for load balancers
    GET /api/v1/health/live  : database round-trip and pipeline table counts
"""

import logging
import time

from flask import Blueprint, current_app, jsonify

from quote_pipeline.models import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")

_TABLES = ("customer_requests", "request_counters", "audit_logs")


@health_bp.route("", methods=["GET"])
def health():
    return jsonify({"status": "ok", "app": "Customer Request Pipeline"}), 200


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Readiness check, always 200 if the app is running."""
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Detailed liveness check with dependency status."""
    checks = {}
    overall = True

    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
    except Exception as exc:
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check: database failed: %s", exc)

    tables = {}
    for tbl in _TABLES:
        try:
            count = db.session.execute(db.text(f"SELECT COUNT(*) FROM {tbl}")).scalar()
            tables[tbl] = {"status": "ok", "count": count}
        except Exception as exc:
            db.session.rollback()
            tables[tbl] = {"status": "error", "detail": str(exc)}
            overall = False
    checks["tables"] = tables

    checks["app"] = {
        "name": "Customer Request Pipeline",
        "debug": current_app.debug,
        "testing": current_app.testing,
    }

    status_code = 200 if overall else 503
    return jsonify({
        "status": "healthy" if overall else "degraded",
        "checks": checks,
    }), status_code

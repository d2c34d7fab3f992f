"""
Health check blueprint.

Endpoints:
    GET /api/v1/health       — simple 200 for load balancers
    GET /api/v1/health/live  — dependency status (database, rate-limit store)
"""

import logging
import time

from flask import Blueprint, current_app, jsonify

from crisis_trainer.models import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")


@health_bp.route("", methods=["GET"])
def ready():
    """Readiness check — always 200 if the app is running."""
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Liveness check with dependency status."""
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

    # ── Rate-limit store ─────────────────────────────────────────────
    storage_uri = current_app.config.get("RATELIMIT_STORAGE_URI", "memory://")
    checks["rate_limit_store"] = {"status": "ok", "backend": storage_uri.split(":", 1)[0]}

    # ── LLM provider ─────────────────────────────────────────────────
    checks["llm"] = {"status": "ok" if current_app.config.get("OPENAI_API_KEY") else "local_stub"}

    status = "ok" if overall else "degraded"
    return jsonify({"status": status, "checks": checks}), 200 if overall else 503

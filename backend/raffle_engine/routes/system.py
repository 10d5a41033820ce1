# backend/raffle_engine/routes/system.py
"""
System health endpoint.

Reports database connectivity and the generation backlog so a monitor can
tell a dead worker (jobs piling up) from a healthy idle system.
"""

import time
from flask import Blueprint, current_app, jsonify
from ..extensions import db
from ..models import GenerationJob, JobStatus, Raffle
from ..time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        raffle_count = db.session.query(Raffle).count()
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {"raffles": raffle_count},
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


def check_generation_backlog() -> dict:
    try:
        rows = (
            db.session.query(GenerationJob.status, db.func.count(GenerationJob.id))
            .group_by(GenerationJob.status)
            .all()
        )
        counts = {status.value: 0 for status in JobStatus}
        for status, count in rows:
            counts[JobStatus(status).value] = count
        return {
            "status": "degraded" if counts["failed"] else "healthy",
            "jobs": counts,
        }
    except Exception:
        current_app.logger.exception("Generation backlog check failed")
        return {"status": "unhealthy", "error": "Database error"}


@system_bp.get("/health")
def health():
    database = check_database_health()
    generation = check_generation_backlog()

    if database["status"] == "unhealthy":
        overall = "unhealthy"
    elif generation["status"] != "healthy":
        overall = "degraded"
    else:
        overall = "healthy"

    body = {
        "status": overall,
        "timestamp": to_utc_z(utcnow()),
        "checks": {"database": database, "generation": generation},
    }
    return jsonify(body), 503 if overall == "unhealthy" else 200

import time

import redis
from flask import Blueprint, current_app, jsonify
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from subsync import extensions
from subsync.extensions import db

bp = Blueprint("health", __name__)


def _check_database():
    start = time.time()
    try:
        db.session.execute(text("SELECT 1"))
        latency = round((time.time() - start) * 1000, 2)
        return {"status": "ok", "latency_ms": latency}
    except SQLAlchemyError as e:
        db.session.rollback()
        return {"status": "error", "error": str(e)}


def _check_redis():
    client = extensions.redis_client
    if client is None:
        return {"status": "skipped", "reason": "local lock backend"}

    start = time.time()
    try:
        client.ping()
        latency = round((time.time() - start) * 1000, 2)
        return {"status": "ok", "latency_ms": latency}
    except redis.RedisError as e:
        return {"status": "error", "error": str(e)}


@bp.route("/health", methods=["GET"])
def health():
    checks = {
        "database": _check_database(),
        "redis": _check_redis(),
    }
    overall = "ok"
    for c in checks.values():
        if c["status"] == "error":
            overall = "degraded"

    registry = current_app.extensions.get("provider_registry")
    return jsonify(
        {
            "status": overall,
            "timestamp": int(time.time()),
            "checks": checks,
            "providers": registry.names() if registry else [],
            "environment": current_app.config.get("ENVIRONMENT", "unknown"),
        }
    ), 200 if overall == "ok" else 503

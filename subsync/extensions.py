# subsync/extensions.py
"""
Flask extensions initialization module.
Holds the process-wide database and Redis handles.
"""

import logging

import redis
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
redis_client = None

logger = logging.getLogger(__name__)


def init_extensions(app):
    """Initialize all Flask extensions."""
    db.init_app(app)
    logger.info("SQLAlchemy initialized")

    init_redis(app)

    if app.config.get("CREATE_TABLES_ON_START", False):
        with app.app_context():
            db.create_all()
            logger.info("Database tables created/verified")

    return app


def init_redis(app):
    """Initialize Redis connection used for per-account locks and the Celery broker."""
    global redis_client

    if app.config.get("LOCK_BACKEND") != "redis":
        redis_client = None
        return None

    redis_url = app.config.get("REDIS_URL", "redis://localhost:6379/0")
    try:
        redis_client = redis.from_url(
            redis_url,
            socket_timeout=5,
            socket_connect_timeout=5,
            retry_on_timeout=True,
            health_check_interval=30,
        )
        redis_client.ping()
        logger.info("Redis initialized successfully")
    except redis.ConnectionError as e:
        logger.error(f"Failed to connect to Redis: {e}")
        if app.config.get("ENVIRONMENT") == "production":
            raise
        redis_client = None

    return redis_client


__all__ = ["db", "redis_client", "init_extensions"]

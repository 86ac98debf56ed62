"""
Flask application factory for the subscription reconciliation service.
Designed to fail fast on configuration errors.
"""

import logging
import sys
from typing import Optional

import sentry_sdk
from flask import Flask
from sentry_sdk.integrations.flask import FlaskIntegration

from subsync.commands import register_commands
from subsync.config import ConfigurationError, get_config, validate_config
from subsync.errors import register_error_handlers
from subsync.extensions import init_extensions
from subsync.logging_config import setup_logging
from subsync.middleware.request_id import init_request_id_middleware
from subsync.routes import register_routes
from subsync.webhooks import init_webhooks
from subsync.workers.celery_app import init_celery

logger = logging.getLogger(__name__)


def setup_sentry(app: Flask) -> None:
    """Initialize Sentry error tracking"""
    sentry_dsn = app.config.get("SENTRY_DSN")
    if not sentry_dsn:
        return

    sentry_sdk.init(
        dsn=sentry_dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=0.1,
        environment=app.config.get("ENVIRONMENT"),
        send_default_pii=False,
    )
    logger.info("Sentry error tracking initialized")


def create_app(config_name: Optional[str] = None, **overrides) -> Flask:
    """
    Build the app.

    ``overrides`` are applied on top of the selected config and
    ``paypal_session`` / ``locks`` may be injected for tests.
    """
    app = Flask(__name__)

    paypal_session = overrides.pop("paypal_session", None)
    locks = overrides.pop("locks", None)

    try:
        config = get_config(config_name)
        app.config.from_object(config)
        app.config.update(overrides)
        validate_config(app.config)
    except ConfigurationError as e:
        print(f"CRITICAL: Configuration error: {str(e)}", file=sys.stderr)
        raise

    setup_logging(app)
    logger.info(f"Starting subsync in {app.config.get('ENVIRONMENT')} mode")

    setup_sentry(app)
    init_request_id_middleware(app)
    init_extensions(app)
    register_error_handlers(app)
    register_routes(app)
    init_webhooks(app, paypal_session=paypal_session, locks=locks)
    init_celery(app)
    register_commands(app)

    logger.info(
        "Application initialization completed",
        extra={"providers": app.extensions["provider_registry"].names()},
    )
    return app

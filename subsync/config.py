"""
Configuration management for the reconciliation service.
Designed to fail fast with clear error messages in production.
"""

import os
from enum import Enum
from urllib.parse import urlparse


class Environment(str, Enum):
    """Environment types"""
    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TESTING = "testing"


class ConfigurationError(Exception):
    """Raised when configuration validation fails"""
    pass


def _env_bool(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


class BaseConfig:
    # ============================================
    # APPLICATION
    # ============================================
    APP_NAME = os.getenv("APP_NAME", "subsync")
    ENVIRONMENT = Environment.DEVELOPMENT.value
    DEBUG = False
    TESTING = False
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
    LOG_REQUESTS = _env_bool("LOG_REQUESTS")
    SENTRY_DSN = os.getenv("SENTRY_DSN")

    # ============================================
    # DATABASE / REDIS
    # ============================================
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", "sqlite:///subsync.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    CREATE_TABLES_ON_START = _env_bool("CREATE_TABLES_ON_START")
    REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

    # ============================================
    # PER-ACCOUNT LOCKING
    # ============================================
    LOCK_BACKEND = os.getenv("LOCK_BACKEND", "redis")  # redis | local
    ACCOUNT_LOCK_TTL = int(os.getenv("ACCOUNT_LOCK_TTL", "30"))
    ACCOUNT_LOCK_WAIT = float(os.getenv("ACCOUNT_LOCK_WAIT", "5"))

    # ============================================
    # STRIPE (card provider)
    # ============================================
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
    STRIPE_WEBHOOK_TOLERANCE = int(os.getenv("STRIPE_WEBHOOK_TOLERANCE", "300"))
    STRIPE_STARTER_PRICE_ID = os.getenv("STRIPE_STARTER_PRICE_ID", "price_starter_monthly")
    STRIPE_PRACTICE_PRICE_ID = os.getenv("STRIPE_PRACTICE_PRICE_ID", "price_practice_monthly")
    STRIPE_ENTERPRISE_PRICE_ID = os.getenv("STRIPE_ENTERPRISE_PRICE_ID", "price_enterprise_monthly")

    # ============================================
    # PAYPAL (account provider)
    # ============================================
    PAYPAL_CLIENT_ID = os.getenv("PAYPAL_CLIENT_ID", "")
    PAYPAL_CLIENT_SECRET = os.getenv("PAYPAL_CLIENT_SECRET", "")
    PAYPAL_MODE = os.getenv("PAYPAL_MODE", "sandbox")  # sandbox | live
    PAYPAL_WEBHOOK_ID = os.getenv("PAYPAL_WEBHOOK_ID", "")
    PAYPAL_TIMEOUT = float(os.getenv("PAYPAL_TIMEOUT", "5"))
    PAYPAL_STARTER_PLAN_ID = os.getenv("PAYPAL_STARTER_PLAN_ID", "P-starter-plan-id")
    PAYPAL_PRACTICE_PLAN_ID = os.getenv("PAYPAL_PRACTICE_PLAN_ID", "P-practice-plan-id")
    PAYPAL_ENTERPRISE_PLAN_ID = os.getenv("PAYPAL_ENTERPRISE_PLAN_ID", "P-enterprise-plan-id")
    # PayPal cancellations downgrade immediately unless this is set
    PAYPAL_CANCEL_AT_PERIOD_END = _env_bool("PAYPAL_CANCEL_AT_PERIOD_END")

    # ============================================
    # RECONCILIATION
    # ============================================
    DEFAULT_PLAN = os.getenv("DEFAULT_PLAN", "practice")
    PAST_DUE_GRACE_DAYS = int(os.getenv("PAST_DUE_GRACE_DAYS", "7"))
    PROCESSED_EVENT_RETENTION_DAYS = int(os.getenv("PROCESSED_EVENT_RETENTION_DAYS", "90"))
    DEAD_LETTER_MAX_ATTEMPTS = int(os.getenv("DEAD_LETTER_MAX_ATTEMPTS", "10"))
    DEAD_LETTER_REPLAY_BATCH = int(os.getenv("DEAD_LETTER_REPLAY_BATCH", "100"))

    # ============================================
    # CELERY
    # ============================================
    CELERY = {
        "broker_url": os.getenv("CELERY_BROKER_URL", REDIS_URL),
        "result_backend": os.getenv("CELERY_RESULT_BACKEND", REDIS_URL),
        "task_ignore_result": True,
    }

    @property
    def STRIPE_PRICE_PLANS(self) -> dict:
        return {
            self.STRIPE_STARTER_PRICE_ID: "starter",
            self.STRIPE_PRACTICE_PRICE_ID: "practice",
            self.STRIPE_ENTERPRISE_PRICE_ID: "enterprise",
        }

    @property
    def PAYPAL_PLAN_IDS(self) -> dict:
        return {
            self.PAYPAL_STARTER_PLAN_ID: "starter",
            self.PAYPAL_PRACTICE_PLAN_ID: "practice",
            self.PAYPAL_ENTERPRISE_PLAN_ID: "enterprise",
        }

    @property
    def PAYPAL_BASE_URL(self) -> str:
        if self.PAYPAL_MODE == "live":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"


class DevelopmentConfig(BaseConfig):
    ENVIRONMENT = Environment.DEVELOPMENT.value
    DEBUG = True
    LOG_LEVEL = os.getenv("LOG_LEVEL", "DEBUG").upper()
    LOCK_BACKEND = os.getenv("LOCK_BACKEND", "local")
    CREATE_TABLES_ON_START = True


class TestingConfig(BaseConfig):
    ENVIRONMENT = Environment.TESTING.value
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URI", "sqlite:///:memory:")
    LOCK_BACKEND = "local"
    CREATE_TABLES_ON_START = False
    STRIPE_WEBHOOK_SECRET = "whsec_test_secret"
    PAYPAL_CLIENT_ID = "paypal-test-client"
    PAYPAL_CLIENT_SECRET = "paypal-test-secret"
    PAYPAL_WEBHOOK_ID = "WH-TEST-0001"
    SENTRY_DSN = None
    CELERY = {
        "broker_url": "memory://",
        "result_backend": "cache+memory://",
        "task_always_eager": True,
        "task_ignore_result": True,
    }


class ProductionConfig(BaseConfig):
    ENVIRONMENT = Environment.PRODUCTION.value
    LOCK_BACKEND = os.getenv("LOCK_BACKEND", "redis")


_CONFIGS = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
}


def get_config(name: str | None = None) -> BaseConfig:
    """Return an instantiated config object for the named environment."""
    name = (name or os.getenv("FLASK_CONFIG", "development")).lower()
    try:
        config_cls = _CONFIGS[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown configuration '{name}'. Expected one of: {', '.join(_CONFIGS)}"
        )
    return config_cls()


def validate_config(config) -> None:
    """
    Fail fast on settings that would make webhook handling unsafe.

    Takes the merged ``app.config`` so overrides are checked too.
    """
    if config.get("ENVIRONMENT") != Environment.PRODUCTION.value:
        return

    if urlparse(config.get("SQLALCHEMY_DATABASE_URI") or "").scheme == "sqlite":
        raise ConfigurationError("SQLite is not allowed in production. Use PostgreSQL.")

    stripe_key = config.get("STRIPE_SECRET_KEY") or ""
    if stripe_key and not config.get("STRIPE_WEBHOOK_SECRET"):
        raise ConfigurationError("STRIPE_WEBHOOK_SECRET is required when Stripe is enabled")

    if stripe_key.startswith("sk_test"):
        raise ConfigurationError("Stripe test key detected in production!")

    if config.get("PAYPAL_CLIENT_ID") and not (
        config.get("PAYPAL_CLIENT_SECRET") and config.get("PAYPAL_WEBHOOK_ID")
    ):
        raise ConfigurationError(
            "PAYPAL_CLIENT_SECRET and PAYPAL_WEBHOOK_ID are required when PayPal is enabled"
        )

    if config.get("LOCK_BACKEND") != "redis":
        raise ConfigurationError("LOCK_BACKEND must be 'redis' in production")

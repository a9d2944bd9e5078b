"""
Catering Quote Workflow
Environment configuration objects, selected by ``APP_ENV``.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'catering_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

_POOL_OPTIONS = {
    "pool_pre_ping": True,
    "pool_size": 5,
    "max_overflow": 10,
    "pool_recycle": 300,
    "pool_timeout": 20,
}


def _database_url(var: str, default: str | None) -> str | None:
    """Read a database URL, rewriting the legacy ``postgres://`` scheme."""
    raw = os.getenv(var, "")
    if not raw:
        return default
    return raw.replace("postgres://", "postgresql://", 1)


class Config:
    """Settings shared by every environment."""

    SECRET_KEY = os.getenv("SECRET_KEY", secrets.token_hex(32))
    DEBUG = False
    TESTING = False

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = dict(_POOL_OPTIONS)

    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")
    MAX_CONTENT_LENGTH = 2 * 1024 * 1024

    LOG_LEVEL = os.getenv("LOG_LEVEL")
    SLOW_REQUEST_MS = int(os.getenv("SLOW_REQUEST_MS", "1000"))

    # No MAIL_SERVER: notifications are written to email_logs only
    MAIL_SERVER = os.getenv("MAIL_SERVER")
    MAIL_PORT = int(os.getenv("MAIL_PORT", "587"))
    MAIL_USE_TLS = os.getenv("MAIL_USE_TLS", "true").lower() == "true"
    MAIL_USERNAME = os.getenv("MAIL_USERNAME")
    MAIL_PASSWORD = os.getenv("MAIL_PASSWORD")
    MAIL_DEFAULT_SENDER = os.getenv("MAIL_DEFAULT_SENDER", "noreply@catering.local")

    # Estimate links are {CUSTOMER_PORTAL_BASE_URL}/estimate?token=...
    CUSTOMER_PORTAL_BASE_URL = os.getenv("CUSTOMER_PORTAL_BASE_URL", "http://localhost:5173")
    ACCESS_TOKEN_TTL_DAYS = int(os.getenv("ACCESS_TOKEN_TTL_DAYS", "90"))

    HOSPITALITY_TAX_RATE = float(os.getenv("HOSPITALITY_TAX_RATE", "0.02"))
    SERVICE_TAX_RATE = float(os.getenv("SERVICE_TAX_RATE", "0.06"))


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url("DATABASE_URL", _SQLITE_DEV)


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    MAIL_SERVER = None
    CUSTOMER_PORTAL_BASE_URL = "https://portal.test"


class ProductionConfig(Config):
    """Requires DATABASE_URL and SECRET_KEY; CORS origins must be listed."""

    SQLALCHEMY_DATABASE_URI = _database_url("DATABASE_URL", None)
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")
    SQLALCHEMY_ENGINE_OPTIONS = {
        **_POOL_OPTIONS,
        "connect_args": {"options": "-c statement_timeout=30000"},
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL must be set for the production config")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY must be set for the production config")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}

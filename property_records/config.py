"""
Property Records configuration.

Selected by name in ``create_app``:

    development   SQLite file under instance/ unless DATABASE_URL is set
    testing       in-memory SQLite, fixed secrets, no rate limits
    production    DATABASE_URL and SECRET_KEY are mandatory
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

_DEV_DB_PATH = os.path.join(basedir, "instance", "property_records_dev.db")

# Regenerated on every start; sessions and tokens do not survive a restart in dev
_EPHEMERAL_SECRET = secrets.token_hex(32)

_POOL_OPTIONS = {
    "pool_pre_ping": True,
    "pool_size": 5,
    "max_overflow": 10,
    "pool_recycle": 300,
    "pool_timeout": 20,
}


def _env_flag(name, default="true"):
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _database_url(default=None):
    # SQLAlchemy 2 only accepts the postgresql:// scheme
    raw = os.getenv("DATABASE_URL")
    if not raw:
        return default
    if raw.startswith("postgres://"):
        raw = "postgresql://" + raw[len("postgres://"):]
    return raw


class Config:
    SECRET_KEY = os.getenv("SECRET_KEY", _EPHEMERAL_SECRET)
    DEBUG = False
    TESTING = False

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = dict(_POOL_OPTIONS)

    # Bearer tokens; JWT_SECRET_KEY falls back to SECRET_KEY
    JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY")
    JWT_ACCESS_EXPIRES = int(os.getenv("JWT_ACCESS_EXPIRES", "900"))
    JWT_LEEWAY = int(os.getenv("JWT_LEEWAY", "0"))

    RATELIMIT_ENABLED = _env_flag("RATELIMIT_ENABLED")
    RATELIMIT_STORAGE_URI = os.getenv("REDIS_URL") or "memory://"

    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # "json" or "readable"; unset picks by environment
    LOG_FORMAT = os.getenv("LOG_FORMAT")


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url(f"sqlite:///{_DEV_DB_PATH}")
    if SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
        SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", "sqlite:///:memory:")
    SQLALCHEMY_ENGINE_OPTIONS = {}
    SECRET_KEY = "test-secret-key"
    JWT_SECRET_KEY = "test-jwt-secret-key-with-enough-length"
    JWT_ACCESS_EXPIRES = 300
    RATELIMIT_ENABLED = False
    LOG_FORMAT = "readable"


class ProductionConfig(Config):
    SQLALCHEMY_DATABASE_URI = _database_url()
    SQLALCHEMY_ENGINE_OPTIONS = {
        **_POOL_OPTIONS,
        "connect_args": {"options": "-c statement_timeout=30000"},
    }
    # No wildcard default in production
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")
    LOG_FORMAT = os.getenv("LOG_FORMAT", "json")

    def __init__(self):
        missing = [
            name for name, value in (
                ("DATABASE_URL", self.SQLALCHEMY_DATABASE_URI),
                ("SECRET_KEY", os.getenv("SECRET_KEY")),
            ) if not value
        ]
        if missing:
            raise RuntimeError(f"Production config requires: {', '.join(missing)}")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}

"""
Capacity Planner
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'capacity_planner_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"


def _database_url() -> str:
    # SQLAlchemy 2.0 only accepts the postgresql:// scheme
    return os.getenv("DATABASE_URL", "").replace("postgres://", "postgresql://", 1)


class Config:
    """Base configuration shared across all environments."""

    DEBUG = False
    TESTING = False

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Flask-Limiter; shared storage is needed once more than one worker serves merges
    RATELIMIT_ENABLED = True
    RATELIMIT_STORAGE_URI = os.getenv("REDIS_URL", "memory://")

    # Bounded wait for the per-target merge lock before answering "retry later"
    MERGE_LOCK_TIMEOUT_SECONDS = float(os.getenv("MERGE_LOCK_TIMEOUT_SECONDS", "2"))

    BASELINE_SCENARIO_NAME = os.getenv("BASELINE_SCENARIO_NAME", "Current State Baseline")


class DevelopmentConfig(Config):
    """Local development: SQLite unless DATABASE_URL points elsewhere."""

    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url() or _SQLITE_DEV


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    RATELIMIT_ENABLED = False
    MERGE_LOCK_TIMEOUT_SECONDS = 0.2


class ProductionConfig(Config):
    """PostgreSQL behind a process pool; merges are short, so queries are capped."""

    SQLALCHEMY_DATABASE_URI = _database_url() or None
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "connect_args": {"options": "-c statement_timeout=30000"},
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}

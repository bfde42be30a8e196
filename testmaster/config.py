"""
TestMaster AI
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'testmaster_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Identity provider tokens (HS256 bearer JWTs, user id in "sub")
    AUTH_JWT_SECRET = os.getenv("AUTH_JWT_SECRET", "")
    AUTH_JWT_AUDIENCE = os.getenv("AUTH_JWT_AUDIENCE", "authenticated")
    AUTH_REQUIRED = os.getenv("AUTH_REQUIRED", "true").lower() == "true"

    # AI generation
    LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "60"))
    AI_GENERATE_RATE_LIMIT = os.getenv("AI_GENERATE_RATE_LIMIT", "30/minute")
    MODEL_CONFIG_DIR = os.getenv("MODEL_CONFIG_DIR", os.path.join(basedir, "instance", "model_config"))
    PROMPTS_DIR = os.getenv("PROMPTS_DIR", os.path.join(basedir, "prompts"))

    # Review sessions and delete confirmation live in process memory
    REVIEW_SESSION_TTL_SECONDS = int(os.getenv("REVIEW_SESSION_TTL_SECONDS", "3600"))
    DELETE_CONFIRM_TTL_SECONDS = int(os.getenv("DELETE_CONFIRM_TTL_SECONDS", "120"))

    # "default" grants the tester set when role lookup fails, "deny" grants nothing
    PERMISSION_FALLBACK = os.getenv("PERMISSION_FALLBACK", "default")


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = (
        _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else _SQLITE_DEV
    )
    # X-User-Id header accepted in development for convenience
    AUTH_REQUIRED = os.getenv("AUTH_REQUIRED", "false").lower() == "true"


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    AUTH_REQUIRED = False
    AUTH_JWT_SECRET = "testing-secret-key-with-at-least-32-bytes"
    RATELIMIT_ENABLED = False
    MODEL_CONFIG_DIR = None
    PROMPTS_DIR = None


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    # Heroku-style hosts use postgres:// but SQLAlchemy 2.0 requires postgresql://
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else None
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")
        if not self.AUTH_JWT_SECRET:
            raise RuntimeError("AUTH_JWT_SECRET environment variable must be set in production")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}

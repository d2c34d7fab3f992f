"""
Crisis Trainer
Configuration classes for the Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'crisis_trainer_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


def _database_url(default=None):
    # Railway/Heroku use postgres:// but SQLAlchemy 2.0 requires postgresql://
    raw = os.getenv("DATABASE_URL", "")
    return raw.replace("postgres://", "postgresql://", 1) if raw else default


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}

    # Rate limiting: Flask-Limiter (per IP) and the per-session windows share one store
    REDIS_URL = os.getenv("REDIS_URL")
    RATELIMIT_STORAGE_URI = os.getenv("RATELIMIT_STORAGE_URI", REDIS_URL or "memory://")
    EVALUATION_RATE_LIMIT = os.getenv("EVALUATION_RATE_LIMIT", "5/hour")
    FEEDBACK_RATE_LIMIT = os.getenv("FEEDBACK_RATE_LIMIT", "5/hour")
    ANALYSIS_RATE_LIMIT = os.getenv("ANALYSIS_RATE_LIMIT", "5/hour")

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Identity gate
    INTERNAL_SERVICE_KEY = os.getenv("INTERNAL_SERVICE_KEY", "")
    EXTERNAL_API_KEYS = os.getenv("EXTERNAL_API_KEYS", "")  # "partner:key,partner2:key2"

    # LLM
    OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
    EVALUATOR_MODEL = os.getenv("EVALUATOR_MODEL", "gpt-4.1")
    ANALYSIS_MODEL = os.getenv("ANALYSIS_MODEL", "gpt-4o-mini")
    SIMULATOR_MODEL = os.getenv("SIMULATOR_MODEL", "gpt-4o")
    LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "60"))
    LLM_MAX_RETRIES = int(os.getenv("LLM_MAX_RETRIES", "3"))
    PROMPTS_DIR = os.getenv("PROMPTS_DIR", os.path.join(basedir, "prompts"))

    # Voice (LiveKit)
    LIVEKIT_URL = os.getenv("LIVEKIT_URL", "")
    LIVEKIT_API_KEY = os.getenv("LIVEKIT_API_KEY", "")
    LIVEKIT_API_SECRET = os.getenv("LIVEKIT_API_SECRET", "")
    VOICE_TOKEN_TTL = int(os.getenv("VOICE_TOKEN_TTL", "900"))

    # Uploads
    RECORDINGS_DIR = os.getenv("RECORDINGS_DIR", os.path.join(basedir, "instance", "recordings"))
    MAX_CONTENT_LENGTH = 50 * 1024 * 1024

    # Background work runs in daemon threads unless this is set
    RUN_BACKGROUND_TASKS_INLINE = False


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url(_SQLITE_DEV)


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False
    RATELIMIT_STORAGE_URI = "memory://"
    INTERNAL_SERVICE_KEY = "test-internal-key"
    EXTERNAL_API_KEYS = "acme:test-partner-key"
    OPENAI_API_KEY = ""
    LLM_MAX_RETRIES = 1
    LIVEKIT_URL = "wss://livekit.test"
    LIVEKIT_API_KEY = "APItest"
    LIVEKIT_API_SECRET = "livekit-test-secret-livekit-test-secret"
    RUN_BACKGROUND_TASKS_INLINE = True


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    SQLALCHEMY_DATABASE_URI = _database_url()
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    # Override engine options with PostgreSQL statement timeout
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,   # recycle connections every 5 min
        "pool_timeout": 20,    # wait max 20s for a connection from pool
        "connect_args": {
            "options": "-c statement_timeout=30000",  # 30s query timeout
        },
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}

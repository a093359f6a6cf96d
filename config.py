"""
Application configuration — environment-aware settings.

All environment variables are documented here. See .env.example for a template.
"""

from __future__ import annotations

import os
import warnings
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).parent

load_dotenv()


# ---------------------------------------------------------------------------
# Feature flags: plain dict, no external service
# ---------------------------------------------------------------------------
FEATURE_FLAGS: dict[str, bool] = {
    "queue_monitor": False,
    "question_generation": True,
    "scheduler": True,
}


def _int_env(name: str, default: int) -> int:
    return int(os.environ.get(name, str(default)))


class BaseConfig:
    # Core Flask
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-key-change-in-production")
    # Database: SQLite (default) or PostgreSQL (set DATABASE_URL=postgresql://...)
    DATABASE = os.environ.get("DATABASE_URL", str(BASE_DIR / "bootcamp.db"))

    # Service-to-service auth
    SERVICE_API_KEY = os.environ.get("SERVICE_API_KEY", "")
    CRON_SECRET = os.environ.get("CRON_SECRET", "")

    # AI provider keys
    DEEPSEEK_API_KEY = os.environ.get("DEEPSEEK_API_KEY", "")
    OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY", "")
    PERPLEXITY_API_KEY = os.environ.get("PERPLEXITY_API_KEY", "")

    # AI models
    DEEPSEEK_MODEL = os.environ.get("DEEPSEEK_MODEL", "deepseek-chat")
    OPENAI_MODEL = os.environ.get("OPENAI_MODEL", "gpt-4o-mini")
    PERPLEXITY_MODEL = os.environ.get("PERPLEXITY_MODEL", "sonar")

    # Misconception queue
    QUEUE_BATCH_SIZE = _int_env("QUEUE_BATCH_SIZE", 10)
    QUEUE_MAX_RETRIES = _int_env("QUEUE_MAX_RETRIES", 3)
    QUEUE_RETRY_BACKOFF_SECONDS = _int_env("QUEUE_RETRY_BACKOFF_SECONDS", 60)
    QUEUE_RETENTION_DAYS = _int_env("QUEUE_RETENTION_DAYS", 7)
    QUEUE_CLAIM_TIMEOUT_SECONDS = _int_env("QUEUE_CLAIM_TIMEOUT_SECONDS", 300)
    QUEUE_PROCESS_INTERVAL_MINUTES = _int_env("QUEUE_PROCESS_INTERVAL_MINUTES", 5)

    # Explanation cache eviction (entries untouched for this many days)
    EXPLANATION_CACHE_TTL_DAYS = _int_env("EXPLANATION_CACHE_TTL_DAYS", 30)

    # Concept explanations are identical across students; cache the LLM output
    CONCEPT_EXPLANATION_CACHE_TTL = _int_env("CONCEPT_EXPLANATION_CACHE_TTL", 86400)

    # Logging
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "text")  # "json" or "text"
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Redis (cache backend + rate limit storage)
    REDIS_URL = os.environ.get("REDIS_URL", "")

    # Response compression
    COMPRESS_MIMETYPES = ["application/json"]
    COMPRESS_MIN_SIZE = 500

    # Rate limiting (defaults to in-memory; set REDIS_URL for Redis-backed)
    RATELIMIT_STORAGE_URI = os.environ.get("REDIS_URL", "") or "memory://"

    FEATURE_FLAGS = FEATURE_FLAGS


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "text")
    FEATURE_FLAGS = {**FEATURE_FLAGS, "queue_monitor": True}


class ProductionConfig(BaseConfig):
    DEBUG = False
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "json")

    @classmethod
    def validate(cls):
        """Fail fast on missing or insecure configuration in production."""
        errors: list[str] = []

        if cls.SECRET_KEY in ("dev-key-change-in-production", ""):
            errors.append("SECRET_KEY must be set to a secure value in production.")

        if not cls.SERVICE_API_KEY:
            errors.append("SERVICE_API_KEY must be set in production.")

        if not (cls.DEEPSEEK_API_KEY or cls.OPENAI_API_KEY or cls.PERPLEXITY_API_KEY):
            warnings.warn("No AI provider key is set — explanations will use fallback text.")

        if errors:
            raise RuntimeError(
                "Production configuration errors:\n" + "\n".join(f"  - {e}" for e in errors)
            )


class TestingConfig(BaseConfig):
    TESTING = True
    DEEPSEEK_API_KEY = ""
    OPENAI_API_KEY = ""
    PERPLEXITY_API_KEY = ""
    REDIS_URL = ""
    RATELIMIT_STORAGE_URI = "memory://"
    RATELIMIT_ENABLED = False
    FEATURE_FLAGS = {**FEATURE_FLAGS, "scheduler": False}


config_by_name = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
}

"""
Shared configuration for NoteBridge.
"""

from __future__ import annotations

import logging
import os

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").strip().upper()

logging.basicConfig(level=getattr(logging, LOG_LEVEL, logging.INFO))
logger = logging.getLogger("notebridge")


def _get_bool(env_name: str, default: bool) -> bool:
    value = os.environ.get(env_name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_int(env_name: str, default: int) -> int:
    value = os.environ.get(env_name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_float(env_name: str, default: float) -> float:
    value = os.environ.get(env_name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _get_optional(env_name: str) -> str | None:
    value = os.environ.get(env_name)
    if value is None:
        return None
    value = value.strip()
    return value or None


# Database settings
DB_BACKEND = os.environ.get("DB_BACKEND", "postgres").strip().lower()
SQLITE_PATH = os.environ.get("SQLITE_PATH", "/data/notebridge.db")
# Concurrent slot claims wait on the sqlite write lock instead of failing fast
SQLITE_BUSY_TIMEOUT_SECONDS = _get_float("SQLITE_BUSY_TIMEOUT_SECONDS", 30.0)
DATABASE_URL = os.environ.get("DATABASE_URL")
AUTO_MIGRATE_ON_STARTUP = _get_bool("AUTO_MIGRATE_ON_STARTUP", True)

# Remote knowledge base service
KB_ENDPOINT = os.environ.get("KB_ENDPOINT", "https://bailian.cn-beijing.aliyuncs.com").rstrip("/")
KB_API_KEY = _get_optional("KB_API_KEY")
KB_WORKSPACE_ID = _get_optional("KB_WORKSPACE_ID")
KB_EMBEDDING_MODEL = os.environ.get("KB_EMBEDDING_MODEL", "text-embedding-v2")
KB_DEFAULT_INDEX_ID = _get_optional("KB_DEFAULT_INDEX_ID")
KB_DEFAULT_CATEGORY_ID = _get_optional("KB_DEFAULT_CATEGORY_ID")
KB_PARSER_HINT = os.environ.get("KB_PARSER_HINT", "DASHSCOPE_DOCMIND")
KB_INDEX_NAME_MAX_LENGTH = 20

# Retrieval
KB_RETRIEVE_TOP_K = _get_int("KB_RETRIEVE_TOP_K", 5)
KB_RETRIEVE_MIN_SCORE = _get_float("KB_RETRIEVE_MIN_SCORE", 0.5)

# Remote retry/backoff
KB_TIMEOUT_SECONDS = _get_float("KB_TIMEOUT_SECONDS", 30.0)
KB_RETRY_MAX = _get_int("KB_RETRY_MAX", 2)
KB_RETRY_BACKOFF_SECONDS = _get_float("KB_RETRY_BACKOFF_SECONDS", 0.5)
KB_RETRY_JITTER_SECONDS = _get_float("KB_RETRY_JITTER_SECONDS", 0.25)
KB_FAILURE_THRESHOLD = _get_int("KB_FAILURE_THRESHOLD", 5)
KB_COOLDOWN_SECONDS = _get_int("KB_COOLDOWN_SECONDS", 60)

# Sync scheduling
SYNC_ENABLED = _get_bool("SYNC_ENABLED", True)
SYNC_INTERVAL_SECONDS = _get_int("SYNC_INTERVAL_SECONDS", 86400)
SYNC_ALL_DELAY_SECONDS = _get_float("SYNC_ALL_DELAY_SECONDS", 0.5)
SYNC_OWNER_DELAY_SECONDS = _get_float("SYNC_OWNER_DELAY_SECONDS", 0.3)

# Input limits
MAX_OWNER_ID_LENGTH = _get_int("NOTEBRIDGE_MAX_OWNER_ID_LENGTH", 100)
MAX_EXTERNAL_ID_LENGTH = _get_int("NOTEBRIDGE_MAX_EXTERNAL_ID_LENGTH", 100)
MAX_DISPLAY_NAME_LENGTH = _get_int("NOTEBRIDGE_MAX_DISPLAY_NAME_LENGTH", 255)
MAX_QUERY_LENGTH = _get_int("NOTEBRIDGE_MAX_QUERY_LENGTH", 4000)
MAX_HISTORY_LIMIT = _get_int("NOTEBRIDGE_MAX_HISTORY_LIMIT", 500)


def kb_credentials_configured() -> bool:
    return bool(KB_API_KEY and KB_WORKSPACE_ID)


def validate_and_prepare_config() -> None:
    """Validate configuration and apply derived settings at startup."""
    global DATABASE_URL

    errors = []
    if DB_BACKEND not in {"postgres", "sqlite"}:
        errors.append("DB_BACKEND must be 'postgres' or 'sqlite'")

    if not DATABASE_URL:
        if DB_BACKEND == "sqlite":
            if not SQLITE_PATH:
                errors.append("SQLITE_PATH environment variable is required for sqlite")
            else:
                DATABASE_URL = f"sqlite:///{SQLITE_PATH}"
        else:
            errors.append("DATABASE_URL environment variable is required")
    else:
        url_lower = DATABASE_URL.lower()
        is_sqlite_url = url_lower.startswith("sqlite")
        if DB_BACKEND == "sqlite" and not is_sqlite_url:
            errors.append("DATABASE_URL must be a sqlite URL when DB_BACKEND=sqlite")
        if DB_BACKEND == "postgres" and is_sqlite_url:
            errors.append("DATABASE_URL must be a postgres URL when DB_BACKEND=postgres")

    if KB_RETRIEVE_TOP_K <= 0:
        errors.append("KB_RETRIEVE_TOP_K must be positive")
    if SYNC_ALL_DELAY_SECONDS < 0 or SYNC_OWNER_DELAY_SECONDS < 0:
        errors.append("sync delays must not be negative")

    if not kb_credentials_configured():
        logger.warning(
            "KB_API_KEY/KB_WORKSPACE_ID not configured; knowledge base sync will record failures."
        )
    if not KB_DEFAULT_CATEGORY_ID:
        logger.info("KB_DEFAULT_CATEGORY_ID not set; owners without a pool slot cannot upload.")

    if errors:
        raise RuntimeError("Configuration invalid: " + "; ".join(errors))

"""
Configuration - Environment settings, logging setup and store selection.

Reads a .env file (python-dotenv) then environment variables:
    REDIS_HOST, REDIS_PORT, REDIS_PASSWORD, REDIS_DB
    STORE_BACKEND          redis | memory
    STALE_SESSION_HOURS    active sessions older than this are abandoned on next start
    LOCK_TIMEOUT_SECONDS   lifetime of a per-record lock
    LOCK_WAIT_SECONDS      how long a request waits for a lock
    QUESTIONS_FILE         JSON question bank loaded at startup
    LOG_LEVEL
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

# Load environment variables from .env
load_dotenv()

STORE_BACKENDS = ("redis", "memory")


@dataclass
class Settings:
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: Optional[str] = None
    redis_db: int = 0
    store_backend: str = "redis"
    stale_session_hours: float = 2
    lock_timeout_seconds: float = 10
    lock_wait_seconds: float = 5
    questions_file: Optional[str] = None
    log_level: str = "INFO"


def get_settings() -> Settings:
    """Build Settings from the environment. Bad numbers raise ValueError."""
    settings = Settings(
        redis_host=os.getenv("REDIS_HOST", "localhost"),
        redis_port=int(os.getenv("REDIS_PORT", 6379)),
        redis_password=os.getenv("REDIS_PASSWORD") or None,
        redis_db=int(os.getenv("REDIS_DB", 0)),
        store_backend=os.getenv("STORE_BACKEND", "redis").lower(),
        stale_session_hours=float(os.getenv("STALE_SESSION_HOURS", 2)),
        lock_timeout_seconds=float(os.getenv("LOCK_TIMEOUT_SECONDS", 10)),
        lock_wait_seconds=float(os.getenv("LOCK_WAIT_SECONDS", 5)),
        questions_file=os.getenv("QUESTIONS_FILE") or None,
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )

    if settings.store_backend not in STORE_BACKENDS:
        raise ValueError(f"STORE_BACKEND must be one of {', '.join(STORE_BACKENDS)}")
    if settings.stale_session_hours <= 0:
        raise ValueError("STALE_SESSION_HOURS must be positive")

    return settings


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def build_store(settings: Settings):
    """Store for the configured backend, with the question bank loaded if one is set."""
    if settings.store_backend == "memory":
        from memory_store import InMemoryStore
        store = InMemoryStore(lock_wait_seconds=settings.lock_wait_seconds)
    else:
        from redis_store import RedisStore
        store = RedisStore(settings)

    if settings.questions_file:
        count = store.load_questions(settings.questions_file)
        logging.getLogger(__name__).info("Loaded %d questions from %s", count, settings.questions_file)

    return store

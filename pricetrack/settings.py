"""Environment-driven configuration."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parents[1]
load_dotenv(BASE_DIR / ".env")


def get_db_connection_string() -> str:
    """Get database connection string from environment."""
    if conn_str := os.getenv("DATABASE_URL"):
        return conn_str

    host = os.getenv("PG_HOST", "localhost")
    port = os.getenv("PG_PORT", "5432")
    user = os.getenv("PG_USER", "postgres")
    password = os.getenv("PG_PASS", "password")
    database = os.getenv("PG_DB", "pricetrack")

    return f"postgresql://{user}:{password}@{host}:{port}/{database}"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


@dataclass
class Settings:
    """Runtime settings for crawler, worker and scheduler processes."""

    database_url: str
    queue_name: str = "scrape_tasks"
    queue_poll_interval: float = 1.0
    queue_visibility_timeout: float = 300.0
    queue_max_deliveries: int = 0  # 0 = redeliver forever
    queue_connect_attempts: int = 10
    scheduler_interval: float = 3600.0
    scheduler_batch_limit: int = 500
    scheduler_staleness: float = 6 * 3600.0
    scheduler_hot_staleness: float = 3600.0
    scheduler_hot_priority: int = 8
    fetch_min_delay: float = 1.0
    fetch_max_delay: float = 3.0
    fetch_timeout: float = 30.0
    proxy_url: Optional[str] = None

    @classmethod
    def from_env(cls) -> Settings:
        """Build settings from environment variables (and ``.env``)."""
        return cls(
            database_url=get_db_connection_string(),
            queue_name=os.getenv("QUEUE_NAME", "scrape_tasks"),
            queue_poll_interval=_env_float("QUEUE_POLL_INTERVAL", 1.0),
            queue_visibility_timeout=_env_float("QUEUE_VISIBILITY_TIMEOUT", 300.0),
            queue_max_deliveries=_env_int("QUEUE_MAX_DELIVERIES", 0),
            queue_connect_attempts=_env_int("QUEUE_CONNECT_ATTEMPTS", 10),
            scheduler_interval=_env_float("SCHEDULER_INTERVAL", 3600.0),
            scheduler_batch_limit=_env_int("SCHEDULER_BATCH_LIMIT", 500),
            scheduler_staleness=_env_float("SCHEDULER_STALENESS", 6 * 3600.0),
            scheduler_hot_staleness=_env_float("SCHEDULER_HOT_STALENESS", 3600.0),
            scheduler_hot_priority=_env_int("SCHEDULER_HOT_PRIORITY", 8),
            fetch_min_delay=_env_float("FETCH_MIN_DELAY", 1.0),
            fetch_max_delay=_env_float("FETCH_MAX_DELAY", 3.0),
            fetch_timeout=_env_float("FETCH_TIMEOUT", 30.0),
            proxy_url=os.getenv("PROXY_URL") or None,
        )

"""
config.py
---------
Central configuration module. Loads all environment variables
from the .env file and exposes them as typed constants.
"""

import os
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


# ── PostgreSQL ────────────────────────────────────────────
DB_HOST: str = os.getenv("DB_HOST", "localhost")
DB_PORT: int = int(os.getenv("DB_PORT", "5432"))
DB_NAME: str = os.getenv("DB_NAME", "local_database")
DB_USER: str = os.getenv("DB_USER", "postgres")
DB_PASS: str = os.getenv("DB_PASS", "")
DB_CONNECT_TIMEOUT: int = int(os.getenv("DB_CONNECT_TIMEOUT", "120"))

# ── Connection pool ───────────────────────────────────────
DB_POOL_MIN: int = int(os.getenv("DB_POOL_MIN", "1"))
DB_POOL_MAX: int = int(os.getenv("DB_POOL_MAX", "10"))

# ── Repositories ──────────────────────────────────────────
REPOSITORY_MAX_BATCH_SIZE: int = int(os.getenv("REPOSITORY_MAX_BATCH_SIZE", "1000"))

# ── Cache ─────────────────────────────────────────────────
_raw_interval = os.getenv("CACHE_REFRESH_INTERVAL_SECONDS", "").strip()
CACHE_REFRESH_INTERVAL_SECONDS: Optional[float] = (
    float(_raw_interval) if _raw_interval else None
)
CACHE_PERIODIC_REFRESH: bool = os.getenv("CACHE_PERIODIC_REFRESH", "false").lower() in (
    "1", "true", "yes",
)

# ── Logging ───────────────────────────────────────────────
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

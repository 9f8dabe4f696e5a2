# d2stats/settings.py

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from d2stats.enums import Mode

PROJECT_ROOT = Path(__file__).resolve().parents[1]

DEFAULT_DB = "data/d2stats.db"
DB_PATH_ENV = "D2STATS_DB_PATH"
API_KEY_ENV = "DESTINY_API_KEY"

# Concurrent post game carnage report requests per batch
DETAIL_BATCH_SIZE = 25
DEFAULT_SYNC_MODE = Mode.ALL_PVP
DEFAULT_DRAIN_SCOPE = "character"
DRAIN_SCOPES = ("character", "global")


def resolve_db_path(arg_db: Optional[str] = None) -> str:
    """Pick the store path from the argument, then the environment, then the default."""
    env_db = os.getenv(DB_PATH_ENV, "").strip()
    chosen = arg_db or env_db or DEFAULT_DB
    path = Path(chosen)
    if not path.is_absolute():
        path = PROJECT_ROOT / path
    return str(path)


def get_api_key(explicit: Optional[str] = None) -> Optional[str]:
    key = explicit or os.getenv(API_KEY_ENV, "").strip()
    return key or None

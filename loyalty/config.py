from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field


def _resolve_home() -> Path:
    override = os.getenv("LOYALTY_HOME", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return Path.cwd().resolve()


def _resolve_database_path() -> Path:
    override = os.getenv("LOYALTY_DB_PATH", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return _resolve_home() / "data" / "loyalty.db"


class Settings(BaseModel):
    home: Path = Field(default_factory=_resolve_home)
    database_path: Path = Field(default_factory=_resolve_database_path)

    # Bounded samples returned by the maintenance reports
    diagnose_object_samples: int = 20
    diagnose_rating_samples: int = 10
    repair_samples: int = 20

    metadata_user_agent: str = "Mozilla/5.0 (compatible; LoyaltyBot/1.0)"
    metadata_timeout_seconds: float = 5.0

    api_host: str = "127.0.0.1"
    api_port: int = 8002


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()

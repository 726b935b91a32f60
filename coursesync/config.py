"""
Runtime configuration.

All settings are read from the environment. A `.env` file in the working
directory (or the path given to `Settings.from_env`) is loaded first, so
local setups can keep portal URLs and credentials out of the shell.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


DEFAULT_BASE_URL = "https://portal.example.edu"
DEFAULT_SESSION_PREFIX = "ASP.NET_SessionId="
DEFAULT_SESSION_TTL = 60 * 60 * 24
SYNC_LOCAL = "local"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    portal_base_url: str = DEFAULT_BASE_URL
    portal_verify_ssl: bool = False
    portal_timeout: float = 30.0
    session_prefix: str = DEFAULT_SESSION_PREFIX
    session_ttl: int = DEFAULT_SESSION_TTL
    redis_url: Optional[str] = None
    database_path: Path = Path("coursesync.db")
    sync_env: str = "production"
    acting_student_id: Optional[str] = None
    log_level: str = "INFO"
    log_file: Optional[Path] = None

    @property
    def is_local_sync(self) -> bool:
        return self.sync_env == SYNC_LOCAL

    @classmethod
    def from_env(cls, env_file: str | Path | None = None) -> "Settings":
        """
        Build settings from environment variables (after loading .env).
        """
        load_dotenv(dotenv_path=env_file)

        log_file = os.getenv("LOG_FILE")
        return cls(
            portal_base_url=os.getenv("PORTAL_BASE_URL", DEFAULT_BASE_URL).rstrip("/"),
            portal_verify_ssl=_env_bool("PORTAL_VERIFY_SSL", False),
            portal_timeout=float(os.getenv("PORTAL_TIMEOUT", "30")),
            session_prefix=os.getenv("SESSION_PREFIX", DEFAULT_SESSION_PREFIX),
            session_ttl=int(os.getenv("SESSION_TTL", str(DEFAULT_SESSION_TTL))),
            redis_url=os.getenv("REDIS_URL") or None,
            database_path=Path(os.getenv("DATABASE_PATH", "coursesync.db")),
            sync_env=os.getenv("SYNC_ENV", "production").strip().lower(),
            acting_student_id=os.getenv("ACTING_STUDENT_ID") or None,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_file=Path(log_file) if log_file else None,
        )

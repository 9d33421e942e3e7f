from __future__ import annotations

import os
from pathlib import Path


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class Settings:
    def __init__(self) -> None:
        self.storage_backend = os.getenv("STORAGE_BACKEND", "sqlite").lower()
        self.sqlite_path = Path(os.getenv("SQLITE_PATH", "./data/app.db"))
        self.json_path = Path(os.getenv("JSON_PATH", "./data/jsonstore.json"))
        self.token_secret = os.getenv("TOKEN_SECRET", "change-me")
        self.invitation_ttl_days = _env_int("INVITATION_TTL_DAYS", 15)
        self.scheduler_enabled = _env_bool("SCHEDULER_ENABLED", True)
        self.scheduler_interval_seconds = _env_int("SCHEDULER_INTERVAL_SECONDS", 60)
        self.auth_mode = os.getenv("AUTH_MODE", "none").lower()
        self.default_owner_id = os.getenv("DEFAULT_OWNER_ID", "owner")
        self.owner_token_ttl_minutes = _env_int("OWNER_TOKEN_TTL_MINUTES", 15)
        self.log_level = os.getenv("LOG_LEVEL", "INFO").upper()
        self.host = os.getenv("HOST", "0.0.0.0")
        self.port = _env_int("PORT", 8000)


def ensure_dirs(settings: Settings) -> None:
    settings.sqlite_path.parent.mkdir(parents=True, exist_ok=True)
    settings.json_path.parent.mkdir(parents=True, exist_ok=True)

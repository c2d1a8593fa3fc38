"""Runtime settings for the sync engine.

Values come from the environment (optionally a .env file when APP_LOAD_DOTENV is set).
Read lazily through get_settings() so tests can patch os.environ and call
get_settings.cache_clear().
"""
from __future__ import annotations
import os
from dataclasses import dataclass
from functools import lru_cache

_TRUTHY = {"1", "true", "TRUE", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class SyncSettings:
    default_timezone: str = "Europe/Lisbon"
    initial_window_days: int = 365
    push_batch_limit: int = 1200
    provider_timeout_seconds: int = 20
    provider_max_attempts: int = 3
    stale_run_seconds: int = 1800
    token_safety_margin_seconds: int = 30
    verify_remote_before_skip: bool = False
    lock_backend: str = "memory"
    redis_url: str = "redis://localhost:6379/0"
    google_client_id: str | None = None
    google_client_secret: str | None = None
    microsoft_client_id: str | None = None
    microsoft_client_secret: str | None = None
    microsoft_tenant_id: str = "common"

    @classmethod
    def from_env(cls) -> "SyncSettings":
        return cls(
            default_timezone=os.getenv("CALSYNC_DEFAULT_TIMEZONE") or cls.default_timezone,
            initial_window_days=_env_int("CALSYNC_INITIAL_WINDOW_DAYS", cls.initial_window_days),
            push_batch_limit=_env_int("CALSYNC_PUSH_BATCH_LIMIT", cls.push_batch_limit),
            provider_timeout_seconds=_env_int("CALSYNC_PROVIDER_TIMEOUT_SECONDS", cls.provider_timeout_seconds),
            provider_max_attempts=max(1, _env_int("CALSYNC_PROVIDER_MAX_ATTEMPTS", cls.provider_max_attempts)),
            stale_run_seconds=_env_int("CALSYNC_STALE_RUN_SECONDS", cls.stale_run_seconds),
            verify_remote_before_skip=os.getenv("CALSYNC_VERIFY_REMOTE_BEFORE_SKIP", "") in _TRUTHY,
            lock_backend=os.getenv("SYNC_LOCK_BACKEND", cls.lock_backend).lower(),
            redis_url=os.getenv("REDIS_URL", cls.redis_url),
            google_client_id=os.getenv("GOOGLE_CALENDAR_CLIENT_ID"),
            google_client_secret=os.getenv("GOOGLE_CALENDAR_CLIENT_SECRET"),
            microsoft_client_id=os.getenv("MICROSOFT_CALENDAR_CLIENT_ID"),
            microsoft_client_secret=os.getenv("MICROSOFT_CALENDAR_CLIENT_SECRET"),
            microsoft_tenant_id=os.getenv("MICROSOFT_CALENDAR_TENANT_ID") or cls.microsoft_tenant_id,
        )

    def missing_provider_env(self, provider: str) -> list[str]:
        if provider == "google":
            pairs = [
                ("GOOGLE_CALENDAR_CLIENT_ID", self.google_client_id),
                ("GOOGLE_CALENDAR_CLIENT_SECRET", self.google_client_secret),
            ]
        else:
            pairs = [
                ("MICROSOFT_CALENDAR_CLIENT_ID", self.microsoft_client_id),
                ("MICROSOFT_CALENDAR_CLIENT_SECRET", self.microsoft_client_secret),
            ]
        return [name for name, value in pairs if not value]


@lru_cache(maxsize=1)
def get_settings() -> SyncSettings:
    return SyncSettings.from_env()

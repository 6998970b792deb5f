"""Runtime settings for mealsync.

All tunables of the optimistic pipeline live here: where the local store
is, how to reach the remote store, and the timing constants of the update
state machine.

Manifesto:
    Configuration should be explicit, validated, and environment-driven.

    - **Pydantic validation:** Type-checked at startup, not runtime
    - **Environment-driven:** ``MEALSYNC_*`` env vars and a ``.env`` file
    - **Sensible defaults:** Local in-memory store, 30s rollback timer

Examples:
    >>> from mealsync.core.settings import MealsyncSettings
    >>> settings = MealsyncSettings(remote_url="https://db.example", remote_anon_key="k")
    >>> settings.remote_configured
    True

Tags:
    settings, configuration, pydantic, environment

Doc-Types:
    - API Reference
    - Configuration Guide
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class MealsyncSettings(BaseSettings):
    """Settings for the optimistic store and its backends.

    Fields
    ──────
    local_db_path       : SQLite file for the local backend (``:memory:`` ok)
    remote_url          : Base URL of the PostgREST-compatible remote store
    remote_anon_key     : Project key sent as ``apikey`` on every request
    rollback_timeout    : Seconds before an unresolved update is force-rolled back
    success_grace       : Seconds a successful update stays visible before eviction
    max_retries         : Retries of a transient failure before rollback
    request_timeout     : Hard time budget of a single backend call
    """

    model_config = SettingsConfigDict(
        env_prefix="MEALSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Local store ──────────────────────────────────────────────
    local_db_path: str = ":memory:"

    # ── Remote store ─────────────────────────────────────────────
    remote_url: str | None = None
    remote_anon_key: str | None = None
    remote_timeout: float = Field(default=10.0, gt=0)

    # ── Optimistic updates ───────────────────────────────────────
    rollback_timeout: float = Field(default=30.0, gt=0)
    success_grace: float = Field(default=0.3, ge=0)
    max_pending_updates: int = Field(default=10, ge=1)
    history_limit: int = Field(default=50, ge=1)

    # ── Retry / lifecycle ────────────────────────────────────────
    max_retries: int = Field(default=3, ge=0)
    retry_base_delay: float = Field(default=1.0, ge=0)
    retry_max_delay: float = Field(default=30.0, ge=0)
    request_timeout: float = Field(default=30.0, gt=0)

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = Field(default="auto", pattern="^(auto|json|console)$")

    @field_validator("remote_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip().rstrip("/")
        return value or None

    @property
    def remote_configured(self) -> bool:
        """True when both the remote URL and its key are set."""
        return bool(self.remote_url and self.remote_anon_key)

    @property
    def json_logs(self) -> bool | None:
        return {"json": True, "console": False}.get(self.log_format)


@lru_cache(maxsize=1)
def get_settings() -> MealsyncSettings:
    """Process-wide settings, read once from the environment."""
    return MealsyncSettings()

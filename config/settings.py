"""Application settings loaded from environment variables.

Uses pydantic-settings for validation and type coercion. App-specific
settings use the ``MENTORGATE_`` prefix; infrastructure settings use
their canonical environment variable names via ``validation_alias``.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(StrEnum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """Central configuration for the MentorGate service.

    Environment variables are loaded from a ``.env`` file when present.
    App-specific keys are prefixed with ``MENTORGATE_``; infra keys use
    their standard names (configured via ``validation_alias``).
    """

    model_config = SettingsConfigDict(
        env_prefix="MENTORGATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # ── App ────────────────────────────────────────────────────────────
    env: Literal["development", "production"] = "development"

    # ── GitHub ─────────────────────────────────────────────────────────
    github_token: str = Field(default="", validation_alias="GITHUB_TOKEN")
    github_api_url: str = Field(default="https://api.github.com", validation_alias="GITHUB_API_URL")
    verification_repo_name: str = "verification-repo"

    # ── Redis ──────────────────────────────────────────────────────────
    # Empty string keeps challenges and records in process memory.
    redis_url: str = Field(default="", validation_alias="REDIS_URL")

    # ── API ────────────────────────────────────────────────────────────
    api_host: str = Field(default="0.0.0.0", validation_alias="API_HOST")
    api_port: int = Field(default=8000, validation_alias="API_PORT")
    api_key: str = Field(default="", validation_alias="MENTORGATE_API_KEY")
    # Comma-separated "caller:key" pairs, one per calling service.
    api_keys: str = Field(default="", validation_alias="MENTORGATE_API_KEYS")
    cors_origins: str = Field(default="", validation_alias="CORS_ORIGINS")

    # ── Rate Limiting ──────────────────────────────────────────────────
    rate_limit_per_minute: int = Field(default=60, validation_alias="RATE_LIMIT_PER_MINUTE")
    trusted_proxy_count: int = Field(
        default=1,
        ge=0,
        validation_alias="TRUSTED_PROXY_COUNT",
    )

    # ── Logging ────────────────────────────────────────────────────────
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_format: str = Field(default="json", validation_alias="LOG_FORMAT")

    # ── Challenge sessions ─────────────────────────────────────────────
    challenge_ttl_seconds: int = Field(default=30 * 60, gt=0)
    challenge_code_bytes: int = Field(default=4, ge=4)

    # ── Timeouts (seconds) ─────────────────────────────────────────────
    http_timeout_seconds: float = Field(default=10.0, gt=0)
    # Per ownership channel; must stay below the per-branch verifier deadline.
    channel_timeout_seconds: float = Field(default=20.0, gt=0)
    verifier_timeout_seconds: float = Field(default=45.0, gt=0)

    # ── Minimum requirements gate ──────────────────────────────────────
    min_account_age_days: int = Field(default=0, ge=0)
    min_repos: int = Field(default=0, ge=0)
    min_contributions: int = Field(default=0, ge=0)
    min_followers: int = Field(default=0, ge=0)

    # ── Status policy ──────────────────────────────────────────────────
    # "monotonic" freezes verified records; "reevaluate" allows downgrade.
    status_policy: Literal["monotonic", "reevaluate"] = "monotonic"

    # ── OCR ────────────────────────────────────────────────────────────
    google_application_credentials: str = Field(default="", validation_alias="GOOGLE_APPLICATION_CREDENTIALS")
    ocr_min_confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    max_document_bytes: int = 10 * 1024 * 1024  # 10 MB

    # ── Identity (out-of-band) channels ────────────────────────────────
    identity_provider: Literal["webhook", "mock"] = "mock"
    identity_webhook_url: str = ""
    identity_webhook_token: str = ""

    # ── Validation ─────────────────────────────────────────────────────

    @model_validator(mode="after")
    def _check_timeouts(self) -> Settings:
        if self.channel_timeout_seconds >= self.verifier_timeout_seconds:
            raise ValueError(
                "channel_timeout_seconds must be lower than verifier_timeout_seconds"
            )
        return self

    # ── Derived Properties ─────────────────────────────────────────────

    @property
    def is_production(self) -> bool:
        return self.env == Environment.PRODUCTION

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def caller_keys(self) -> dict[str, str]:
        """Map caller name to API key.

        ``MENTORGATE_API_KEY`` alone registers a single caller named
        ``default``.  Malformed ``MENTORGATE_API_KEYS`` entries are skipped.
        """
        keys: dict[str, str] = {}
        if self.api_key:
            keys["default"] = self.api_key
        for entry in self.api_keys.split(","):
            caller, sep, key = entry.strip().partition(":")
            if sep and caller.strip() and key.strip():
                keys[caller.strip()] = key.strip()
        return keys


# Module-level singleton: import ``settings`` everywhere.
settings = Settings()

from __future__ import annotations

from typing import ClassVar, Literal, final

from pydantic import AliasChoices, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


_CORS_ALLOW_ORIGINS_VALIDATION_ALIAS = AliasChoices("CORS_ALLOW_ORIGINS", "CORS_ORIGINS")


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [x.strip() for x in value.split(",") if x.strip()]


@final
class Settings(BaseSettings):
    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )
    app_name: str = "Zetra Sync"
    api_prefix: str = "/api"

    # Environment (ENVIRONMENT): development | production
    environment: str = "development"

    database_url: str = "sqlite:///./dev.db"

    # Primary env: CORS_ALLOW_ORIGINS; also accept CORS_ORIGINS as alias.
    cors_allow_origins: str = Field(
        default="*",
        validation_alias=_CORS_ALLOW_ORIGINS_VALIDATION_ALIAS,
    )

    log_level: str = "INFO"

    # Sync（离线/多端）相关：客户端时钟不可信，对“超前时间”做钳制
    sync_max_client_clock_skew_seconds: int = 300
    # Incremental sync without lastSync falls back to this window.
    sync_default_lookback_hours: int = 24
    sync_delta_limit: int = 500
    sync_batch_timeout_seconds: float = 25.0
    sync_max_operations_per_batch: int = 500
    # CAS 竞争失败后，单条操作重新进入冲突检测的最大次数
    sync_cas_max_retries: int = 3
    # manual: overlapping concurrent edits become conflicts.
    # last_writer_wins / first_writer_wins: the later / earlier timestamp wins on
    # the overlapping fields.
    # intelligent_merge: per-field rules (list union, deep merge, highest priority).
    sync_overlap_policy: Literal[
        "manual", "last_writer_wins", "first_writer_wins", "intelligent_merge"
    ] = "manual"
    sync_next_sync_conflict_seconds: int = 60
    sync_next_sync_idle_seconds: int = 300
    sync_mobile_optimization_enabled: bool = True

    # Validate production settings early to fail fast on unsafe defaults.
    @model_validator(mode="after")
    def _validate_production_settings(self) -> "Settings":  # pyright: ignore[reportUnusedFunction]
        if self.environment.strip().lower() != "production":
            return self

        errors: list[str] = []

        cors_v = self.cors_allow_origins.strip()
        if not cors_v or cors_v == "*":
            errors.append("CORS_ALLOW_ORIGINS must be explicit (not '*') in production")

        if self.database_url.strip().lower().startswith("sqlite"):
            errors.append("DATABASE_URL must point at a server database in production")

        if self.sync_batch_timeout_seconds <= 0:
            errors.append("SYNC_BATCH_TIMEOUT_SECONDS must be positive")

        if errors:
            raise ValueError("Invalid production settings: " + "; ".join(errors))
        return self

    def cors_origins_list(self) -> list[str]:
        v = self.cors_allow_origins.strip()
        if not v:
            return []
        if v == "*":
            return ["*"]
        return _split_csv(v)

    def security_warnings(self) -> list[str]:
        warnings: list[str] = []
        if self.cors_allow_origins.strip() == "*":
            warnings.append("CORS_ALLOW_ORIGINS='*' is permissive")
        if self.sync_overlap_policy in {"last_writer_wins", "first_writer_wins"}:
            warnings.append(
                f"SYNC_OVERLAP_POLICY={self.sync_overlap_policy} can silently discard concurrent edits"
            )
        return warnings


settings = Settings()

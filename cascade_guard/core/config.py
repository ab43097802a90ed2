"""
Cascade Guard - Configuration
=============================

All client-side safety settings loaded from environment variables.
Uses pydantic-settings for validation and type conversion.
"""

from functools import lru_cache
from typing import Literal

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Cascade Guard settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Application
    # ==========================================================================
    APP_NAME: str = "Cascade Guard"
    APP_VERSION: str = "0.1.0"
    ENVIRONMENT: Literal["development", "staging", "production", "test"] = "development"
    DEBUG: bool = False

    # ==========================================================================
    # Backend API (deletion execution, session refresh, password check)
    # ==========================================================================
    API_BASE_URL: str = "http://localhost:3001/api"
    API_TIMEOUT_SECONDS: float = 30.0
    CLEANUP_BATCH_SIZE: int = 50

    # ==========================================================================
    # Security Session
    # ==========================================================================
    SESSION_TTL_SECONDS: int = 30 * 60
    SESSION_REFRESH_MARGIN_SECONDS: int = 5 * 60
    ACTIVITY_LOG_SIZE: int = 100

    # ==========================================================================
    # Rate Limiting (per operation bucket)
    # ==========================================================================
    RATE_LIMIT_SINGLE_MAX: int = 5
    RATE_LIMIT_SINGLE_WINDOW_SECONDS: int = 60
    RATE_LIMIT_BULK_MAX: int = 1
    RATE_LIMIT_BULK_WINDOW_SECONDS: int = 5 * 60
    RATE_LIMIT_CLEANUP_MAX: int = 1
    RATE_LIMIT_CLEANUP_WINDOW_SECONDS: int = 60 * 60

    # ==========================================================================
    # Suspicious Activity Heuristics
    # ==========================================================================
    SUSPICIOUS_RAPID_DELETIONS: int = 10
    SUSPICIOUS_RAPID_WINDOW_SECONDS: int = 5 * 60
    SUSPICIOUS_FAILED_ATTEMPTS: int = 5
    SUSPICIOUS_FAILED_WINDOW_SECONDS: int = 10 * 60

    # Bulk/cascade denied inside [start, end) local hours unless top tier
    OFF_HOURS_START: int = 22
    OFF_HOURS_END: int = 6

    # ==========================================================================
    # Verification
    # ==========================================================================
    VERIFICATION_TIMEOUT_SECONDS: int = 300
    TOKEN_TTL_SECONDS: int = 5 * 60
    TOKEN_SECRET: str = "CHANGE-ME-IN-PRODUCTION-USE-LONG-RANDOM-STRING"

    # ==========================================================================
    # Realtime Transport
    # ==========================================================================
    REALTIME_URL: str = "ws://localhost:3001/ws/cascade"
    RECONNECT_BASE_DELAY_MS: int = 1000
    RECONNECT_MAX_DELAY_MS: int = 30000
    MAX_RECONNECT_ATTEMPTS: int = 5
    HEARTBEAT_INTERVAL_SECONDS: float = 30.0
    CONNECTION_TIMEOUT_SECONDS: float = 10.0
    OUTBOUND_QUEUE_MAX: int = 100
    OUTBOUND_QUEUE_MAX_AGE_SECONDS: float = 60.0
    # Field naming the operation in subscribe/unsubscribe payloads
    SUBSCRIPTION_ID_FIELD: str = "studentId"

    # ==========================================================================
    # Progress Tracking
    # ==========================================================================
    SNAPSHOT_INTERVAL_SECONDS: float = 2.0
    SNAPSHOT_CAPACITY: int = 50

    # ==========================================================================
    # Audit
    # ==========================================================================
    AUDIT_HISTORY_SIZE: int = 1000

    # ==========================================================================
    # Computed Properties
    # ==========================================================================
    @computed_field  # type: ignore[misc]
    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @computed_field  # type: ignore[misc]
    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @computed_field  # type: ignore[misc]
    @property
    def is_test(self) -> bool:
        return self.ENVIRONMENT == "test"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export
settings = get_settings()

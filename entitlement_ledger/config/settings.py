"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Hard ceiling the storage provider imposes on one atomic write group.
PROVIDER_MAX_OPS_PER_GROUP = 500


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./entitlement_ledger.db",
        description="Async SQLAlchemy connection URL",
    )
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Batched writes
    batch_max_ops_per_group: int = Field(
        default=PROVIDER_MAX_OPS_PER_GROUP,
        description="Maximum write operations committed in one atomic group",
    )

    # Payment -> entitlement linkage
    grant_retry_max_attempts: int = Field(
        default=3, description="Attempts to grant a purchased entitlement before failing"
    )
    grant_retry_base_delay: float = Field(
        default=0.5, description="Base delay for grant retry backoff (seconds)"
    )
    grant_retry_max_delay: float = Field(
        default=4.0, description="Upper bound for a single grant retry delay (seconds)"
    )

    # Settlement
    fraud_suspicion_threshold: int = Field(
        default=40, description="Risk score at or above which a settlement is suspicious"
    )
    default_currency: str = Field(default="XOF", description="Currency used when none is given")

    # Promotions
    promo_toggle_audited: bool = Field(
        default=False, description="Write an audit record when a promo code is toggled"
    )

    # Application Configuration
    app_name: str = Field(default="entitlement-ledger", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)",
    )
    subject_header: str = Field(
        default="X-Subject-Id",
        description="Header carrying the subject id verified by the identity gateway",
    )

    # Internal collaborators (identity sync, payment provider, fraud scoring)
    internal_api_secret: str = Field(
        default="",
        description="Shared secret internal callers present; empty rejects every internal call",
    )
    internal_auth_header: str = Field(
        default="X-Internal-Token",
        description="Header carrying the internal shared secret",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("batch_max_ops_per_group")
    @classmethod
    def validate_batch_ceiling(cls, v: int) -> int:
        """Keep the group size within what the storage provider accepts."""
        if not 1 <= v <= PROVIDER_MAX_OPS_PER_GROUP:
            raise ValueError(
                f"batch_max_ops_per_group must be between 1 and {PROVIDER_MAX_OPS_PER_GROUP}"
            )
        return v

    @field_validator("grant_retry_max_attempts")
    @classmethod
    def validate_retry_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("grant_retry_max_attempts must be at least 1")
        return v

    @field_validator("fraud_suspicion_threshold")
    @classmethod
    def validate_threshold(cls, v: int) -> int:
        if not 0 <= v <= 100:
            raise ValueError("fraud_suspicion_threshold must be between 0 and 100")
        return v

    @field_validator("default_currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        if len(v) != 3:
            raise ValueError("Currency must be 3-letter code")
        return v.upper()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()

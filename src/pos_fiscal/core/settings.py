"""Application settings and configuration.

This module defines all configuration options for the POS fiscal engine.
Settings are loaded from environment variables with sensible defaults.
"""

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    This class defines all configuration options for the submission engine.
    Settings can be overridden via environment variables or .env files.
    """

    # Application metadata
    app_name: str = Field(default="POS Fiscal", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    debug: bool = Field(default=False, alias="DEBUG")

    # Database configuration
    database_url: str = Field(default="sqlite:///./pos_fiscal.db", alias="DATABASE_URL")
    test_database_url: str | None = Field(default=None, alias="TEST_DATABASE_URL")
    use_testing_database: bool = Field(default=False, alias="USE_TEST_DATABASE")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")

    # Credential vault (urlsafe base64 encoded 32-byte AES key)
    fbr_master_key: SecretStr | None = Field(default=None, alias="FBR_MASTER_KEY")

    # FBR Digital Invoicing endpoints
    fbr_default_base_url: str = Field(
        default="https://gw.fbr.gov.pk/di_data/v1/di",
        alias="FBR_DEFAULT_BASE_URL",
    )
    fbr_reference_base_url: str = Field(
        default="https://gw.fbr.gov.pk/pdi/v1",
        alias="FBR_REFERENCE_BASE_URL",
    )
    fbr_reference_token: SecretStr | None = Field(default=None, alias="FBR_REFERENCE_TOKEN")
    fbr_http_timeout_seconds: float = Field(default=30.0, alias="FBR_HTTP_TIMEOUT_SECONDS")

    # Submission queue tuning
    queue_batch_size: int = Field(default=10, alias="QUEUE_BATCH_SIZE")
    queue_max_attempts: int = Field(default=5, alias="QUEUE_MAX_ATTEMPTS")
    queue_backoff_base_seconds: float = Field(
        default=60.0,
        alias="QUEUE_BACKOFF_BASE_SECONDS",
    )
    queue_backoff_max_seconds: float = Field(
        default=3600.0,
        alias="QUEUE_BACKOFF_MAX_SECONDS",
    )
    queue_backoff_jitter_ratio: float = Field(
        default=0.2,
        alias="QUEUE_BACKOFF_JITTER_RATIO",
    )
    queue_lease_seconds: int = Field(default=120, alias="QUEUE_LEASE_SECONDS")

    # Worker run limits (cron fires every 5 minutes)
    worker_run_deadline_seconds: float = Field(
        default=240.0,
        alias="WORKER_RUN_DEADLINE_SECONDS",
    )

    # Reference data cache
    reference_refresh_interval_seconds: float = Field(
        default=3600.0,
        alias="REFERENCE_REFRESH_INTERVAL_SECONDS",
    )

    # CORS configuration for web frontend access
    cors_origins: list[str] = Field(
        default=["*"],
        alias="CORS_ORIGINS",
    )
    cors_allow_credentials: bool = Field(default=True, alias="CORS_ALLOW_CREDENTIALS")
    cors_allow_methods: list[str] = Field(
        default=["GET", "POST", "OPTIONS"],
        alias="CORS_ALLOW_METHODS",
    )
    cors_allow_headers: list[str] = Field(
        default=["*"],
        alias="CORS_ALLOW_HEADERS",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
    )

    @model_validator(mode="after")
    def check_timeout_fits_lease(self) -> "Settings":
        """Reject a submit timeout that could outlast the lease held during the call."""
        if self.fbr_http_timeout_seconds >= self.queue_lease_seconds:
            raise ValueError(
                "FBR_HTTP_TIMEOUT_SECONDS must be shorter than QUEUE_LEASE_SECONDS"
            )
        return self

    @property
    def effective_database_url(self) -> str:
        """Return the database URL respecting testing overrides.

        Returns:
            The active database URL (test database if in testing mode, otherwise production)
        """
        if self.use_testing_database and self.test_database_url:
            return self.test_database_url
        return self.database_url

    @property
    def queue_knobs(self) -> dict[str, float]:
        """Return the queue tuning parameters as a convenience dictionary.

        Returns:
            Dictionary with batch, retry and lease settings for transparency endpoints
        """
        return {
            "batch_size": float(self.queue_batch_size),
            "max_attempts": float(self.queue_max_attempts),
            "backoff_base_seconds": self.queue_backoff_base_seconds,
            "backoff_max_seconds": self.queue_backoff_max_seconds,
            "backoff_jitter_ratio": self.queue_backoff_jitter_ratio,
            "lease_seconds": float(self.queue_lease_seconds),
        }


settings = Settings()  # type: ignore[call-arg]

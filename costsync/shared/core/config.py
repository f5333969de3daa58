from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import model_validator
from typing import Optional


class Settings(BaseSettings):
    """
    Main configuration for CostSync.
    Uses Pydantic-Settings for environment variable parsing from .env.
    """
    APP_NAME: str = "CostSync"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # local, development, staging, production
    OTEL_EXPORTER_OTLP_ENDPOINT: Optional[str] = None
    OTEL_EXPORTER_OTLP_INSECURE: bool = False
    TESTING: bool = False

    @model_validator(mode='after')
    def validate_security_config(self) -> 'Settings':
        """Ensure critical production keys are present and valid."""
        if self.TESTING:
            return self

        if self.is_production:
            if not self.ENCRYPTION_KEY or len(self.ENCRYPTION_KEY) < 32:
                raise ValueError("ENCRYPTION_KEY must be at least 32 characters in production.")

            if not self.INTERNAL_JOB_SECRET:
                raise ValueError("INTERNAL_JOB_SECRET must be set in production.")

            if self.DB_SSL_MODE not in ["require", "verify-ca", "verify-full"]:
                raise ValueError(
                    "SECURITY ERROR: DB_SSL_MODE must be 'require', 'verify-ca', or 'verify-full' "
                    f"in production. Current: {self.DB_SSL_MODE}"
                )

        if self.ENVIRONMENT in ["production", "staging"]:
            if not self.ADMIN_API_KEY:
                raise ValueError(f"SECURITY ERROR: ADMIN_API_KEY must be configured in {self.ENVIRONMENT} environment.")

            if self.ENVIRONMENT == "production" and len(self.ADMIN_API_KEY) < 32:
                raise ValueError("SECURITY ERROR: ADMIN_API_KEY must be at least 32 characters in production for security.")

        return self

    # Security
    CORS_ORIGINS: list[str] = []
    ADMIN_API_KEY: Optional[str] = None
    INTERNAL_JOB_SECRET: Optional[str] = None
    ENCRYPTION_KEY: Optional[str] = None

    # Database
    DATABASE_URL: str  # Required in prod
    DB_SSL_MODE: str = "require"  # Options: disable, require, verify-ca, verify-full
    DB_SSL_CA_CERT_PATH: Optional[str] = None
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10

    # Celery broker / result backend
    REDIS_URL: Optional[str] = None

    # Azure endpoints
    AZURE_MANAGEMENT_URL: str = "https://management.azure.com"
    AZURE_COST_API_VERSION: str = "2023-03-01"
    AZURE_HTTP_TIMEOUT_SECONDS: float = 60.0

    # Historical sync tuning
    SYNC_PAGE_DELAY_SECONDS: float = 0.5
    SYNC_MAX_PAGES: int = 200
    SYNC_RATE_LIMIT_RETRIES: int = 3
    SYNC_RATE_LIMIT_BACKOFF_SECONDS: float = 15.0  # wait = attempt * backoff
    SYNC_CHAIN_DELAY_SECONDS: int = 3
    SYNC_CHUNK_TIMEOUT_SECONDS: float = 540.0  # below CostSyncChunkHandler.timeout_seconds
    SYNC_MAX_HISTORY_MONTHS: int = 13
    INCREMENTAL_SYNC_DAYS: int = 7
    UPSERT_BATCH_SIZE: int = 500

    # Period comparison
    COMPARISON_PAGE_SIZE: int = 1000
    COMPARISON_TOP_RESOURCES: int = 20

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


@lru_cache
def get_settings():
    """Return cached settings instance."""
    return Settings()

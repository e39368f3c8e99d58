"""
Application settings loaded from environment variables.

Uses pydantic-settings for validation and type safety.
Secrets (APP_SECRET_TOKEN, BITRIX_WEBHOOK_URL) belong in .env, never in code.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    """
    Application settings.

    All values loaded from .env file or environment variables.
    Validation happens automatically on startup.
    """

    model_config = SettingsConfigDict(
        env_file=(".env", "../.env"),  # Check current dir, then parent
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"  # Ignore extra env vars
    )

    # ===================
    # SECURITY GATE
    # ===================
    app_secret_token: Optional[str] = Field(
        None,
        description="Shared secret every pipeline request must present"
    )
    allowed_domains: str = Field(
        default="",
        description="Comma-separated CRM portal domains (empty = any domain)"
    )

    # ===================
    # BITRIX24
    # ===================
    bitrix_webhook_url: Optional[str] = Field(
        None,
        description="Inbound webhook base URL, may contain a {domain} placeholder"
    )
    rate_limit_interval_ms: int = Field(
        default=500,
        ge=0,
        le=60000,
        description="Minimum delay between two CRM calls (500 = 2 calls/second)"
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        le=300,
        description="Transport timeout for a single CRM call"
    )

    # ===================
    # PIPELINE LIMITS
    # ===================
    batch_size: int = Field(
        default=50,
        ge=1,
        le=50,
        description="Pending changes per execution batch (CRM batch cap is 50)"
    )
    max_upload_rows: int = Field(
        default=100000,
        ge=1,
        description="Maximum data rows accepted in one upload"
    )
    max_upload_size_mb: int = Field(
        default=50,
        ge=1,
        le=500,
        description="Maximum upload size in megabytes"
    )
    task_workers: int = Field(
        default=4,
        ge=1,
        le=32,
        description="Background worker threads for matching/execution/undo"
    )

    # ===================
    # STORAGE
    # ===================
    storage_backend: str = Field(
        default="memory",
        pattern="^(memory|file)$",
        description="Session store backend"
    )
    data_dir: str = Field(
        default="data",
        description="Directory for the file store backend"
    )

    # ===================
    # APP SETTINGS
    # ===================
    environment: str = Field(
        default="development",
        pattern="^(development|staging|production)$",
        description="Application environment"
    )
    debug: bool = Field(
        default=True,
        description="Enable debug mode"
    )
    log_level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        description="Logging level"
    )
    api_host: str = Field(
        default="0.0.0.0",
        description="API host"
    )
    api_port: int = Field(
        default=8000,
        ge=1000,
        le=65535,
        description="API port"
    )
    cors_origins: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        description="Comma-separated origins allowed by CORS"
    )

    # ===================
    # COMPUTED PROPERTIES
    # ===================
    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"

    @property
    def allowed_domain_list(self) -> list[str]:
        """Allowed domains as a cleaned list."""
        return [d.strip() for d in self.allowed_domains.split(",") if d.strip()]

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def rate_limit_interval_seconds(self) -> float:
        return self.rate_limit_interval_ms / 1000.0

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_size_mb * 1024 * 1024


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload.

    Returns:
        Settings: Application settings

    Raises:
        ValidationError: If env vars are invalid
    """
    return Settings()


# For convenient imports: from config.settings import settings
settings = get_settings()

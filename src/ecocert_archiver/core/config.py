"""Application configuration using Pydantic BaseSettings."""

import logging

import structlog
from pydantic import Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ecocert_archiver.services.exceptions import ConfigurationError


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Database Configuration
    database_url: str = Field(alias="DATABASE_URL")
    db_pool_size: int = Field(default=10, alias="DB_POOL_SIZE")

    # Application Environment
    app_env: str = Field(default="development", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Content download
    download_directory: str = Field(default="./temp/downloads", alias="DOWNLOAD_DIRECTORY")
    max_file_size_mb: int = Field(default=100, alias="MAX_FILE_SIZE_MB")
    request_timeout_ms: int = Field(default=30000, alias="REQUEST_TIMEOUT_MS")
    max_redirects: int = Field(default=5, alias="MAX_REDIRECTS")

    # Concurrency limits (bounded worker groups)
    max_concurrent_downloads: int = Field(default=5, ge=1, alias="MAX_CONCURRENT_DOWNLOADS")
    max_concurrent_uploads: int = Field(default=3, ge=1, alias="MAX_CONCURRENT_UPLOADS")
    max_concurrent_ecocerts: int = Field(default=2, ge=1, alias="MAX_CONCURRENT_ECOCERTS")

    # Retry eligibility
    max_retry_attempts: int = Field(default=3, alias="MAX_RETRY_ATTEMPTS")
    retry_cooldown_minutes: int = Field(default=5, alias="RETRY_COOLDOWN_MINUTES")

    # IPFS Upload (Pinata)
    pinata_jwt: str = Field(default="", alias="PINATA_JWT")
    pinata_api_key: str = Field(default="", alias="PINATA_API_KEY")
    pinata_api_secret: str = Field(default="", alias="PINATA_API_SECRET")
    pinata_gateway: str = Field(default="https://gateway.pinata.cloud", alias="PINATA_GATEWAY")
    pinata_timeout_ms: int = Field(default=60000, alias="PINATA_TIMEOUT_MS")

    # Content validation
    require_https: bool = Field(default=True, alias="REQUIRE_HTTPS")
    enforce_mime_allowlist: bool = Field(default=True, alias="ENFORCE_MIME_ALLOWLIST")
    scan_for_malware: bool = Field(default=True, alias="SCAN_FOR_MALWARE")
    block_suspicious_content: bool = Field(default=False, alias="BLOCK_SUSPICIOUS_CONTENT")

    # Shutdown
    shutdown_grace_seconds: float = Field(default=30.0, alias="SHUTDOWN_GRACE_SECONDS")

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * 1024 * 1024

    @model_validator(mode="after")
    def validate_required_config(self) -> "Settings":
        """Validate required configuration on startup.

        Pinata credentials are needed for every pipeline run. Fails fast with a clear
        error message if they are absent.

        Validation is skipped in test/development environments to avoid breaking tests.
        """
        if self.app_env in ("test", "testing", "development"):
            return self

        missing = []

        if not self.pinata_jwt and not (self.pinata_api_key and self.pinata_api_secret):
            missing.append(
                "PINATA_JWT (or PINATA_API_KEY + PINATA_API_SECRET): "
                "Create credentials at https://app.pinata.cloud/developers/api-keys"
            )

        if missing:
            error_msg = "CRITICAL: Missing required environment variables:\n\n" + "\n".join(
                f"  - {m}" for m in missing
            )
            error_msg += "\n\nThe archiver cannot start without these variables."
            raise ValueError(error_msg)

        return self


def configure_logging(settings: Settings) -> None:
    """Configure structlog based on application environment.

    - Production: JSON output for log aggregation
    - Development: Console output for human readability
    """
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    if settings.is_production:
        processors = [
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def load_settings(**overrides) -> Settings:
    """Load settings from the environment, raising ConfigurationError when invalid.

    Args:
        **overrides: Field values taking precedence over the environment (by alias)

    Raises:
        ConfigurationError: CONFIG_INVALID listing the offending keys
    """
    try:
        return Settings(**overrides)  # type: ignore[call-arg]
    except ValidationError as e:
        keys = sorted({str(error["loc"][0]) for error in e.errors() if error.get("loc")})
        messages = [str(error.get("msg", "")) for error in e.errors()]
        raise ConfigurationError(
            f"Invalid configuration ({', '.join(keys) or 'settings'}): {'; '.join(messages)}",
            "CONFIG_INVALID",
            {"keys": keys},
        ) from e

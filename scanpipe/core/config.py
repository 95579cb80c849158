"""
ScanPipe Application Configuration

Configuration management with environment variable support.
Implements secure defaults and validation for all settings.
"""

from functools import lru_cache
from typing import List

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file
load_dotenv()


class Settings(BaseSettings):
    """Application settings with validation and secure defaults."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=True, extra="ignore"
    )

    # Environment settings
    ENVIRONMENT: str = Field(
        default="development", description="Application environment"
    )
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    LOG_JSON: bool = Field(
        default=False, description="Render structured logs as JSON lines"
    )

    # Redis configuration
    REDIS_ENABLED: bool = Field(
        default=True, description="Use Redis as the durable cache tier"
    )
    REDIS_URL: str = Field(
        default="redis://localhost:6379/0", description="Redis connection URL"
    )
    REDIS_MAX_CONNECTIONS: int = Field(
        default=10, ge=1, le=50, description="Redis connection pool size"
    )
    REDIS_CONNECTION_TIMEOUT: float = Field(
        default=5.0, gt=0, le=60, description="Redis connect timeout in seconds"
    )
    REDIS_OPERATION_TIMEOUT: float = Field(
        default=2.0, gt=0, le=60, description="Redis per-operation timeout in seconds"
    )

    # Circuit breaker settings
    CIRCUIT_BREAKER_FAILURE_THRESHOLD: int = Field(
        default=5, ge=1, le=20, description="Circuit breaker failure threshold"
    )
    CIRCUIT_BREAKER_RECOVERY_TIMEOUT: int = Field(
        default=30,
        ge=1,
        le=300,
        description="Circuit breaker recovery timeout in seconds",
    )

    # Cache configuration
    CACHE_DEFAULT_NAMESPACE: str = Field(
        default="scanpipe", description="Namespace for keys without a strategy"
    )
    CACHE_FAST_TTL_SECONDS: int = Field(
        default=300, ge=1, le=86400, description="Default fast tier TTL"
    )
    CACHE_FAST_MAX_SIZE: int = Field(
        default=1000, ge=1, le=1_000_000, description="Fast tier entries per namespace"
    )
    CACHE_DURABLE_TTL_SECONDS: int = Field(
        default=3600, ge=1, le=86400 * 30, description="Default durable tier TTL"
    )
    CACHE_COMPRESS: bool = Field(
        default=False, description="Compress durable tier payloads by default"
    )

    # Queue configuration
    QUEUE_DEFAULT_CONCURRENCY: int = Field(
        default=5, ge=1, le=100, description="Workers per queue"
    )
    QUEUE_REMOVE_ON_COMPLETE: int = Field(
        default=50, ge=0, description="Completed jobs retained per queue"
    )
    QUEUE_REMOVE_ON_FAIL: int = Field(
        default=20, ge=0, description="Failed jobs retained per queue"
    )
    QUEUE_DEFAULT_ATTEMPTS: int = Field(
        default=1, ge=1, le=10, description="Attempts for queues outside the catalog"
    )
    QUEUE_DEFAULT_BACKOFF_MS: int = Field(
        default=2000, ge=0, le=600_000, description="Base exponential backoff delay"
    )
    QUEUE_RETRY_DELAY_SCALE: float = Field(
        default=1.0, ge=0, le=10.0, description="Multiplier applied to every backoff"
    )
    QUEUE_SHUTDOWN_TIMEOUT: float = Field(
        default=30.0, ge=0, description="Graceful dispatcher shutdown timeout"
    )

    # Quick scan path
    QUICK_SCAN_POLL_INTERVAL_MS: int = Field(
        default=500, ge=10, le=10000, description="Bounded wait poll interval"
    )
    QUICK_SCAN_TIMEOUT_MS: int = Field(
        default=15000, ge=100, le=120000, description="Bounded wait budget"
    )

    # Status events
    EVENTS_DEFAULT_UPDATE_FREQUENCY_MS: int = Field(
        default=1000, ge=0, le=60000, description="Progress throttle per subscriber"
    )
    SUBSCRIBER_MAX_HISTORY_ITEMS: int = Field(
        default=50, ge=1, le=10000, description="Terminal jobs kept in history"
    )
    EVENTS_REDIS_BRIDGE: bool = Field(
        default=False, description="Mirror job events to Redis pub/sub"
    )
    SSE_KEEPALIVE_SECONDS: float = Field(
        default=15.0, gt=0, le=300, description="SSE keepalive interval"
    )

    # API configuration
    API_HOST: str = Field(default="0.0.0.0", description="API server host")
    API_PORT: int = Field(default=8000, ge=1, le=65535, description="API server port")
    CORS_ORIGINS: str = Field(
        default="http://localhost:3000",
        description="CORS allowed origins (comma-separated)",
    )

    @field_validator("ENVIRONMENT")
    @classmethod
    def validate_environment(cls, v):
        """Validate environment value."""
        allowed = ["development", "test", "staging", "production"]
        if v not in allowed:
            raise ValueError(f"ENVIRONMENT must be one of: {allowed}")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed:
            raise ValueError(f"LOG_LEVEL must be one of: {allowed}")
        return v.upper()

    @field_validator("REDIS_URL")
    @classmethod
    def validate_redis_url(cls, v):
        """Validate Redis URL scheme."""
        if not v.startswith(("redis://", "rediss://", "unix://")):
            raise ValueError("REDIS_URL must be a redis:// or rediss:// URL")
        return v

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.ENVIRONMENT == "production"

    @property
    def cors_origins_list(self) -> List[str]:
        """Get CORS origins as list."""
        return [
            origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()
        ]


@lru_cache()
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()

"""Settings configuration"""
from functools import lru_cache
from typing import Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ragchat_core.orchestrator.circuit_breaker import CircuitBreakerConfig
from ragchat_core.orchestrator.retry_handler import RetryConfig


class Settings(BaseSettings):
    """Core settings loaded from the environment or a ``.env`` file.

    Durations are in seconds.
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", case_sensitive=False,
        populate_by_name=True,
    )

    # Application
    environment: str = Field(default="development", validation_alias="ENVIRONMENT")
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_format: str = Field(default="console", validation_alias="LOG_FORMAT")

    # API Keys
    openai_api_key: Optional[SecretStr] = Field(default=None, validation_alias="OPENAI_API_KEY")
    anthropic_api_key: Optional[SecretStr] = Field(default=None, validation_alias="ANTHROPIC_API_KEY")
    google_api_key: Optional[SecretStr] = Field(default=None, validation_alias="GOOGLE_API_KEY")

    # Endpoints
    openai_base_url: Optional[str] = Field(default=None, validation_alias="OPENAI_BASE_URL")
    anthropic_base_url: Optional[str] = Field(default=None, validation_alias="ANTHROPIC_BASE_URL")
    google_base_url: str = Field(
        default="https://generativelanguage.googleapis.com", validation_alias="GOOGLE_BASE_URL"
    )
    request_timeout: float = Field(default=60.0, validation_alias="REQUEST_TIMEOUT", gt=0)

    # Retry
    max_retries: int = Field(default=3, validation_alias="MAX_RETRIES", ge=0)
    retry_initial_delay: float = Field(default=1.0, validation_alias="RETRY_INITIAL_DELAY", ge=0)
    retry_max_delay: float = Field(default=30.0, validation_alias="RETRY_MAX_DELAY", ge=0)
    retry_backoff_factor: float = Field(default=2.0, validation_alias="RETRY_BACKOFF_FACTOR", ge=1)

    # Circuit breaker
    circuit_breaker_enabled: bool = Field(default=True, validation_alias="CIRCUIT_BREAKER_ENABLED")
    circuit_failure_threshold: int = Field(default=5, validation_alias="CIRCUIT_FAILURE_THRESHOLD", ge=1)
    circuit_recovery_timeout: float = Field(
        default=300.0, validation_alias="CIRCUIT_RECOVERY_TIMEOUT", ge=0
    )

    # Routing
    fallback_strategy: str = Field(default="none", validation_alias="FALLBACK_STRATEGY")

    # Vector store
    openai_vector_store_id: Optional[str] = Field(default=None, validation_alias="OPENAI_VECTOR_STORE_ID")
    vector_store_name: str = Field(default="RAG Chat Vector Store", validation_alias="VECTOR_STORE_NAME")
    vector_store_poll_interval: float = Field(
        default=2.0, validation_alias="VECTOR_STORE_POLL_INTERVAL", gt=0
    )
    vector_store_max_wait_time: float = Field(
        default=300.0, validation_alias="VECTOR_STORE_MAX_WAIT_TIME", gt=0
    )
    vector_store_max_file_size: int = Field(
        default=512 * 1024 * 1024, validation_alias="VECTOR_STORE_MAX_FILE_SIZE", gt=0
    )
    vector_store_max_files: int = Field(default=20, validation_alias="VECTOR_STORE_MAX_FILES", ge=1)
    vector_store_upload_concurrency: int = Field(
        default=5, validation_alias="VECTOR_STORE_UPLOAD_CONCURRENCY", ge=1
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v):
        """Validate environment value."""
        allowed = ["development", "staging", "production", "testing"]
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v = v.upper()
        if v not in allowed:
            raise ValueError(f"log_level must be one of {allowed}")
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v):
        v = v.lower()
        if v not in ("json", "console"):
            raise ValueError("log_format must be 'json' or 'console'")
        return v

    @field_validator("fallback_strategy")
    @classmethod
    def validate_fallback_strategy(cls, v):
        allowed = ["none", "fastest", "round_robin", "least_loaded"]
        v = v.lower()
        if v not in allowed:
            raise ValueError(f"fallback_strategy must be one of {allowed}")
        return v

    # Properties
    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def has_openai_key(self) -> bool:
        return bool(self.openai_api_key and self.openai_api_key.get_secret_value())

    @property
    def has_anthropic_key(self) -> bool:
        return bool(self.anthropic_api_key and self.anthropic_api_key.get_secret_value())

    @property
    def has_google_key(self) -> bool:
        return bool(self.google_api_key and self.google_api_key.get_secret_value())

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_retries=self.max_retries,
            initial_delay=self.retry_initial_delay,
            max_delay=self.retry_max_delay,
            backoff_factor=self.retry_backoff_factor,
        )

    def circuit_breaker_config(self) -> CircuitBreakerConfig:
        return CircuitBreakerConfig(
            failure_threshold=self.circuit_failure_threshold,
            recovery_timeout=self.circuit_recovery_timeout,
        )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()

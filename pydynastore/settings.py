"""Environment-driven settings for PyDynastore.

Settings are read from the environment with pydantic-settings. The two backend
selection signals keep their conventional unprefixed names; everything else
uses the ``PYDYNASTORE_`` prefix.

Environment variables:
    CLASS_RESOLVER_OVERRIDE: Explicit backend override ("test", "mock",
        "memory", "prod", "production").
    APP_ENV: Deployment stage ("dev", "development", "test", "staging",
        "prod", "production").
    PYDYNASTORE_REGION: AWS region (default "us-east-2").
    PYDYNASTORE_ENDPOINT_URL: Custom DynamoDB endpoint, e.g. DynamoDB Local.
    PYDYNASTORE_BATCH_MAX_RETRIES: Retries of unprocessed batch items (default 5).
    PYDYNASTORE_BATCH_BASE_DELAY: Base backoff delay in seconds (default 0.1).
    PYDYNASTORE_LOG_LEVEL: Minimum log level (default "INFO").
    PYDYNASTORE_LOG_FORMAT: "json" or "console" (default "json").
"""

from typing import Literal

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from pydynastore.observability import LogFormat

DEFAULT_REGION = "us-east-2"

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class StoreSettings(BaseSettings):
    """Settings for backend selection, the DynamoDB client and logging."""

    model_config = SettingsConfigDict(
        env_prefix="PYDYNASTORE_",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    class_resolver_override: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "CLASS_RESOLVER_OVERRIDE", "PYDYNASTORE_CLASS_RESOLVER_OVERRIDE"
        ),
        description="Explicit backend override, takes precedence over app_env",
    )
    app_env: str | None = Field(
        default=None,
        validation_alias=AliasChoices("APP_ENV", "PYDYNASTORE_APP_ENV"),
        description="Deployment stage used to select the backend",
    )
    region: str = Field(default=DEFAULT_REGION, description="AWS region")
    endpoint_url: str | None = Field(
        default=None,
        description="Custom DynamoDB endpoint URL",
    )
    batch_max_retries: int = Field(
        default=5,
        ge=0,
        description="Maximum retries of unprocessed batch items",
    )
    batch_base_delay: float = Field(
        default=0.1,
        ge=0,
        description="Base delay in seconds of the batch retry backoff",
    )
    log_level: LogLevel = Field(default="INFO", description="Minimum log level")
    log_format: LogFormat = Field(default="json", description="Log output format")


__all__ = [
    "DEFAULT_REGION",
    "LogLevel",
    "StoreSettings",
]

from __future__ import annotations

from typing import Self

from dotenv import load_dotenv
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.constants import DB_SCHEMA

# Load .env once at module import; every BaseSettings subclass sees the env vars
load_dotenv()


class DatabaseSettings(BaseSettings):
    """PostgreSQL connection settings. Env vars prefixed with DATABASE_."""

    model_config = SettingsConfigDict(env_prefix="DATABASE_")

    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    password: str = ""
    name: str = "handoff"
    schema_: str = Field(DB_SCHEMA, validation_alias="DATABASE_SCHEMA")

    @field_validator("schema_")
    @classmethod
    def _validate_schema(cls, v: str) -> str:
        if v != DB_SCHEMA:
            msg = f"DATABASE_SCHEMA must be '{DB_SCHEMA}' (got '{v}')."
            raise ValueError(msg)
        return v


class OpenAISettings(BaseSettings):
    """Streaming chat backend (OpenAI-compatible). Env vars prefixed with OPENAI_.

    An empty api_key means the transport is not configured; invocations then
    fail with ConfigurationError before anything is written.
    """

    model_config = SettingsConfigDict(env_prefix="OPENAI_")

    api_key: str = ""
    model: str = "gpt-4o-mini"
    base_url: str | None = None
    system_prompt: str = (
        "You are a calm, organised assistant. Lead with a clear conclusion, "
        "then give brief reasons and actionable suggestions."
    )


class DeliverySettings(BaseSettings):
    """Background delivery tuning. Env vars prefixed with DELIVERY_."""

    model_config = SettingsConfigDict(env_prefix="DELIVERY_")

    flush_interval_s: float = 0.15  # minimum gap between throttled flushes
    deadline_s: float = 180.0  # timeout supervisor deadline
    linger_s: float = 2.0  # status surface linger after terminal update
    max_window_s: float = 600.0  # background window expiration
    history_limit: int = 8  # completed records sent as context
    signal_prefix: str = "handoff"
    suite: str = "group.handoff"  # shared_values namespace

    @model_validator(mode="after")
    def _validate(self) -> Self:
        if self.flush_interval_s <= 0:
            raise ValueError(f"flush_interval_s must be > 0, got {self.flush_interval_s}")
        if self.deadline_s <= 0:
            raise ValueError(f"deadline_s must be > 0, got {self.deadline_s}")
        if self.linger_s < 0:
            raise ValueError(f"linger_s must be >= 0, got {self.linger_s}")
        if self.max_window_s < self.deadline_s:
            raise ValueError(
                f"max_window_s ({self.max_window_s}) must be >= "
                f"deadline_s ({self.deadline_s})"
            )
        if self.history_limit < 0:
            raise ValueError(f"history_limit must be >= 0, got {self.history_limit}")
        if not self.signal_prefix.strip():
            raise ValueError("signal_prefix must not be empty")
        return self


class GatewaySettings(BaseSettings):
    """Host HTTP server settings. Env vars prefixed with GATEWAY_."""

    model_config = SettingsConfigDict(env_prefix="GATEWAY_")

    host: str = "0.0.0.0"
    port: int = 19790
    drain_timeout_s: float = 30.0  # wait for in-flight deliveries on shutdown


class Settings(BaseSettings):
    """Root settings composing all sub-configurations."""

    model_config = SettingsConfigDict(extra="ignore")

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    openai: OpenAISettings = Field(default_factory=OpenAISettings)
    delivery: DeliverySettings = Field(default_factory=DeliverySettings)
    gateway: GatewaySettings = Field(default_factory=GatewaySettings)
    log_level: str = "INFO"


def get_settings() -> Settings:
    """Load and validate settings. Raises ValidationError on invalid values."""
    return Settings()

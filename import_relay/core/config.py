"""
Import Relay - Configuration

Settings for the import relay worker, read from environment variables.

    from import_relay.core.config import load_environment, get_settings

    load_environment()          # optional: loads .env into os.environ
    settings = get_settings()   # cached Settings instance

Required in production:
  KAFKA_BOOTSTRAP_SERVERS   - Broker list (host:port,host:port)
  IMPORT_GRPC_HOST          - Import service host (plain host or dns:///name)

Everything else has a default matching the current deployment:
5 second fixed backoff with 3 retries, one consumer per process.
"""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_ENV_FILE = ".env"


class Settings(BaseSettings):
    """
    Import relay settings.

    Does NOT auto-load any .env file; call load_environment() first when a
    dotenv file should be honoured.
    """

    model_config = SettingsConfigDict(
        env_file=None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # =========================================================================
    # ENVIRONMENT CONTROL
    # =========================================================================

    ENVIRONMENT: Literal["dev", "staging", "prod"] = Field(
        default="dev",
        description="Deployment environment",
    )
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )
    LOG_JSON: bool = Field(
        default=True,
        description="Emit JSON log lines (set false for plain text in development)",
    )

    # =========================================================================
    # KAFKA
    # =========================================================================

    KAFKA_BOOTSTRAP_SERVERS: str = Field(default="localhost:9092")
    KAFKA_GROUP_ID: str = Field(default="import-relay")
    KAFKA_AUTO_OFFSET_RESET: Literal["earliest", "latest"] = Field(default="earliest")
    KAFKA_MAX_POLL_INTERVAL_MS: int = Field(
        default=300_000,
        ge=10_000,
        description="Must exceed the worst-case retry time of a single message",
    )

    IMPORT_REQUESTS_TOPIC: str = Field(default="importacao.solicitacoes")
    IMPORT_FAILURES_TOPIC: str = Field(default="importacao.falhas")
    IMPORT_DEAD_LETTER_TOPIC: str | None = Field(
        default=None,
        description="Destination for messages whose retries were exhausted",
    )

    CONSUMER_CONCURRENCY: int = Field(default=1, ge=1, le=64)
    POLL_TIMEOUT_SECONDS: float = Field(default=1.0, gt=0)

    # =========================================================================
    # RETRY
    # =========================================================================

    RETRY_ATTEMPTS: int = Field(
        default=3,
        ge=0,
        description="Retries after the first delivery before dead-lettering",
    )
    RETRY_BACKOFF_SECONDS: float = Field(default=5.0, ge=0)

    # =========================================================================
    # IMPORT SERVICE (gRPC)
    # =========================================================================

    IMPORT_GRPC_HOST: str = Field(default="localhost")
    IMPORT_GRPC_PORT: int = Field(default=9090, ge=1, le=65535)
    IMPORT_GRPC_TIMEOUT_SECONDS: float = Field(
        default=30.0,
        gt=0,
        description="Per-call deadline; an expired deadline is a transient failure",
    )

    # =========================================================================
    # METRICS
    # =========================================================================

    METRICS_PORT: int | None = Field(
        default=None,
        description="Port for the Prometheus exporter; disabled when unset",
    )

    @field_validator("ENVIRONMENT", mode="before")
    @classmethod
    def _normalize_environment(cls, v: Any) -> Any:
        if isinstance(v, str):
            normalized = v.strip().lower()
            aliases = {"production": "prod", "development": "dev"}
            if normalized in aliases:
                logger.warning(
                    "ENVIRONMENT=%s is deprecated, use %s", v, aliases[normalized]
                )
                return aliases[normalized]
            return normalized
        return v

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def _normalize_log_level(cls, v: Any) -> Any:
        return v.strip().upper() if isinstance(v, str) else v

    @field_validator("IMPORT_DEAD_LETTER_TOPIC", mode="before")
    @classmethod
    def _blank_topic_is_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @property
    def grpc_target(self) -> str:
        """Channel target; a dns:/// host uses the native name resolver."""
        return f"{self.IMPORT_GRPC_HOST}:{self.IMPORT_GRPC_PORT}"

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "prod"

    def kafka_consumer_config(self) -> dict[str, Any]:
        """librdkafka consumer config with manual offset commits."""
        return {
            "bootstrap.servers": self.KAFKA_BOOTSTRAP_SERVERS,
            "group.id": self.KAFKA_GROUP_ID,
            "auto.offset.reset": self.KAFKA_AUTO_OFFSET_RESET,
            "enable.auto.commit": False,
            "max.poll.interval.ms": self.KAFKA_MAX_POLL_INTERVAL_MS,
        }

    def kafka_producer_config(self) -> dict[str, Any]:
        return {
            "bootstrap.servers": self.KAFKA_BOOTSTRAP_SERVERS,
            "enable.idempotence": True,
        }

    def effective_config(self) -> dict[str, Any]:
        """Settings as a plain dict for --print-config and boot reports."""
        return self.model_dump()


# =========================================================================
# SINGLETON PATTERN
# =========================================================================


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def reset_settings() -> None:
    """Clear the cached settings (for testing or environment switch)."""
    get_settings.cache_clear()


# =========================================================================
# ENVIRONMENT LOADING
# =========================================================================


def load_environment(env_file: str | Path | None = None, override: bool = False) -> int:
    """
    Load variables from a dotenv file into os.environ.

    Explicit exports win unless override is True. A missing file is not
    an error: containers get their configuration from the environment.

    Args:
        env_file: Path to the dotenv file (default: IMPORT_RELAY_ENV_FILE or .env)
        override: If True, override variables already set

    Returns:
        Number of variables loaded
    """
    from dotenv import dotenv_values

    path = Path(env_file or os.environ.get("IMPORT_RELAY_ENV_FILE", DEFAULT_ENV_FILE))
    if not path.exists():
        logger.debug("Environment file not found: %s", path)
        return 0

    count = 0
    for key, value in dotenv_values(path, encoding="utf-8").items():
        if value is None:
            continue
        if override or key not in os.environ:
            os.environ[key] = value
            count += 1

    reset_settings()
    logger.debug("Loaded %d variables from %s", count, path)
    return count

"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
ERC20 transfer indexer, loading and validating environment variables
at startup.
"""

from __future__ import annotations

import logging
import re
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


class DatabaseSettings(BaseSettings):
    """Database connection settings.

    When ``DATABASE_URL`` is unset the application falls back to an
    in-memory ledger, which is only suitable for demos.
    """

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="DATABASE_URL",
        description="PostgreSQL (or sqlite+aiosqlite) connection string",
    )
    pool_size: int = Field(
        default=5,
        alias="DATABASE_POOL_SIZE",
        ge=1,
        le=100,
        description="Connection pool size",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate database URL format."""
        if v is None or not v.strip():
            return None
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL or sqlite+aiosqlite connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings (block timestamp cache)."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string; caching is disabled when unset",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is None or not v.strip():
            return None
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class ChainSettings(BaseSettings):
    """JSON-RPC provider and token contract settings."""

    model_config = SettingsConfigDict(env_prefix="CHAIN_", extra="ignore")

    rpc_url: str = Field(
        default="https://ethereum-sepolia-rpc.publicnode.com",
        alias="CHAIN_RPC_URL",
        description="JSON-RPC endpoint of the chain-data provider",
    )
    token_address: str = Field(
        default="0x89865aaf2251b10ffc80ce4a809522506bf10ba2",
        alias="CHAIN_TOKEN_ADDRESS",
        description="ERC20 token contract to index",
    )
    max_requests_per_second: float = Field(
        default=25.0,
        alias="CHAIN_MAX_REQUESTS_PER_SECOND",
        gt=0.0,
        le=1000.0,
        description="Client-side rate limit for RPC calls",
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        alias="CHAIN_REQUEST_TIMEOUT_SECONDS",
        gt=0.0,
        le=600.0,
        description="HTTP timeout for a single RPC request",
    )
    poa_middleware: bool = Field(
        default=False,
        alias="CHAIN_POA_MIDDLEWARE",
        description="Inject the proof-of-authority extraData middleware (Polygon, BSC, ...)",
    )

    @field_validator("rpc_url")
    @classmethod
    def validate_rpc_url(cls, v: str) -> str:
        """Validate RPC URL format."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("CHAIN_RPC_URL must be an HTTP(S) endpoint")
        return v

    @field_validator("token_address")
    @classmethod
    def validate_token_address(cls, v: str) -> str:
        if not _ADDRESS_RE.match(v):
            raise ValueError("CHAIN_TOKEN_ADDRESS must be a 0x-prefixed 20-byte hex address")
        return v.lower()


class IndexerSettings(BaseSettings):
    """Polling loop settings."""

    model_config = SettingsConfigDict(env_prefix="INDEXER_", extra="ignore")

    start_block: int | None = Field(
        default=None,
        alias="INDEXER_START_BLOCK",
        ge=0,
        description="Block treated as already indexed when no cursor exists yet",
    )
    min_confirmations: int = Field(
        default=5,
        alias="INDEXER_MIN_CONFIRMATIONS",
        ge=0,
        le=10_000,
        description="Most recent blocks excluded from indexing",
    )
    step_blocks: int = Field(
        default=2500,
        alias="INDEXER_STEP_BLOCKS",
        ge=1,
        le=500_000,
        description="Maximum number of blocks scanned per cycle",
    )
    idle_interval_ms: int = Field(
        default=5000,
        alias="INDEXER_IDLE_INTERVAL_MS",
        ge=0,
        le=3_600_000,
        description="Sleep between successful cycles (milliseconds)",
    )
    timestamp_concurrency: int = Field(
        default=10,
        alias="INDEXER_TIMESTAMP_CONCURRENCY",
        ge=1,
        le=100,
        description="Block timestamp requests kept in flight at once",
    )
    strict_timestamps: bool = Field(
        default=False,
        alias="INDEXER_STRICT_TIMESTAMPS",
        description="Fail the cycle instead of substituting wall-clock time for unresolved blocks",
    )


class ApiSettings(BaseSettings):
    """HTTP query API settings."""

    model_config = SettingsConfigDict(env_prefix="API_", extra="ignore")

    host: str = Field(
        default="0.0.0.0",
        alias="API_HOST",
        description="Interface the HTTP server binds to",
    )
    port: int = Field(
        default=3001,
        alias="API_PORT",
        ge=1,
        le=65535,
        description="HTTP port for the query API",
    )
    admin_api_key: SecretStr | None = Field(
        default=None,
        alias="API_ADMIN_API_KEY",
        description="Reserved for administrative endpoints",
    )


class Settings(BaseSettings):
    """Root application settings."""

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    chain: ChainSettings = Field(
        default_factory=lambda: ChainSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    indexer: IndexerSettings = Field(
        default_factory=lambda: IndexerSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    api: ApiSettings = Field(
        default_factory=lambda: ApiSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url) if self.database.url else "(in-memory)",
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "chain": {
                "rpc_url": self.chain.rpc_url,
                "token_address": self.chain.token_address,
                "poa_middleware": str(self.chain.poa_middleware),
            },
            "indexer": {
                "start_block": str(self.indexer.start_block) if self.indexer.start_block is not None else "(not set)",
                "min_confirmations": str(self.indexer.min_confirmations),
                "step_blocks": str(self.indexer.step_blocks),
                "idle_interval_ms": str(self.indexer.idle_interval_ms),
                "strict_timestamps": str(self.indexer.strict_timestamps),
            },
            "api": {
                "host": self.api.host,
                "port": str(self.api.port),
                "admin_api_key": "(set)" if self.api.admin_api_key else "(not set)",
            },
            "log_level": self.log_level,
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Raises:
        ValidationError: If environment variables have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()

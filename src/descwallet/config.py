"""
Configuration management using pydantic-settings.

Every field can be set through a ``DESCWALLET_``-prefixed environment
variable or a ``.env`` file; CLI flags take precedence.
"""

from __future__ import annotations

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from descwallet.backends.esplora import (
    DEFAULT_ESPLORA_URLS,
    DEFAULT_MAX_CONCURRENT_REQUESTS,
    DEFAULT_REQUEST_TIMEOUT,
)
from descwallet.constants import DEFAULT_FEE_RATE, DEFAULT_GAP_LIMIT
from descwallet.wallet.models import NetworkType


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="DESCWALLET_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    network: NetworkType = NetworkType.TESTNET
    # Empty means the public instance for the network
    esplora_url: str = ""

    gap_limit: int = Field(default=DEFAULT_GAP_LIMIT, ge=1)
    fee_rate: float = Field(default=DEFAULT_FEE_RATE, ge=0, description="sat/vB")
    rbf: bool = True

    request_timeout: float = Field(default=DEFAULT_REQUEST_TIMEOUT, gt=0)
    max_concurrent_requests: int = Field(default=DEFAULT_MAX_CONCURRENT_REQUESTS, ge=1)

    log_level: str = "WARNING"

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level

    def get_esplora_url(self) -> str:
        return self.esplora_url or DEFAULT_ESPLORA_URLS[self.network.value]


def get_settings(**overrides: object) -> Settings:
    """Load settings, letting non-None keyword overrides win over the environment."""
    return Settings(**{k: v for k, v in overrides.items() if v is not None})

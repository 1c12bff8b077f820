"""Configuration surface for subscription issuance."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class IssuanceSettings(BaseSettings):
    """Main issuance configuration."""

    model_config = SettingsConfigDict(
        env_prefix="SUBSCRIPTION_",
        env_file=".env",
        extra="ignore",
    )

    # Environment
    environment: Literal["dev", "staging", "prod"] = "dev"

    # Subscription service (GraphQL endpoint)
    graphql_url: str = "http://localhost:3000/graphql"
    # Bearer credential; prefer a CredentialProvider over setting this directly
    service_token: Optional[SecretStr] = None
    service_max_retries: int = Field(default=3, ge=0)
    service_retry_base_delay: float = Field(default=0.5, ge=0)

    # Wallet bridge
    wallet_bridge_url: str = "http://localhost:8090/cip30"
    wallet_provider: str = "yoroi"
    network: Literal["mainnet", "preprod", "preview"] = "preprod"

    # Independent timeout per suspension point, in seconds
    connect_timeout_seconds: float = Field(default=60.0, gt=0)
    signing_timeout_seconds: float = Field(default=300.0, gt=0)
    broadcast_timeout_seconds: float = Field(default=60.0, gt=0)
    service_timeout_seconds: float = Field(default=30.0, gt=0)
    confirmation_timeout_seconds: float = Field(default=600.0, gt=0)
    confirmation_poll_interval_seconds: float = Field(default=5.0, gt=0)

    # Acceptance may already be durable on the service at this point
    allow_cancel_after_acceptance: bool = True

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    @field_validator("graphql_url", "wallet_bridge_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @model_validator(mode="after")
    def require_tls_outside_dev(self) -> "IssuanceSettings":
        if self.environment == "dev":
            return self
        for name in ("graphql_url", "wallet_bridge_url"):
            url = getattr(self, name)
            if url.startswith("http://"):
                raise ValueError(f"Plain-http {name} not allowed in {self.environment}: {url}")
        return self


@lru_cache
def load_settings(env_file: str | None = None) -> IssuanceSettings:
    """Load IssuanceSettings once per process."""
    if env_file:
        return IssuanceSettings(_env_file=Path(env_file))
    return IssuanceSettings()

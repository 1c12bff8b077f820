"""Credential providers for the subscription service channel.

The orchestrator never sees credentials. Service adapters ask a provider for
a bearer token right before each request so rotated tokens are picked up.
"""
from __future__ import annotations

import os
from abc import ABC, abstractmethod
from typing import Optional

from pydantic import SecretStr


class CredentialProvider(ABC):
    """Abstract source of bearer tokens."""

    @abstractmethod
    async def get_token(self) -> Optional[str]:
        """Return the current token, or None for anonymous access."""
        pass

    async def authorization_header(self) -> dict[str, str]:
        token = await self.get_token()
        if not token:
            return {}
        return {"Authorization": f"Bearer {token}"}


class StaticCredentialProvider(CredentialProvider):
    """Fixed token, kept as a SecretStr so it never shows up in reprs or logs."""

    def __init__(self, token: Optional[SecretStr | str]):
        if isinstance(token, str):
            token = SecretStr(token)
        self._token = token

    async def get_token(self) -> Optional[str]:
        if self._token is None:
            return None
        return self._token.get_secret_value() or None


class EnvCredentialProvider(CredentialProvider):
    """Reads the token from an environment variable at call time."""

    def __init__(self, variable: str = "SUBSCRIPTION_SERVICE_TOKEN"):
        self.variable = variable

    async def get_token(self) -> Optional[str]:
        return os.getenv(self.variable) or None

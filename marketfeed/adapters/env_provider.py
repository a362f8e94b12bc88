from __future__ import annotations

import logging
import os
from typing import Optional

from marketfeed.ports.secrets_provider import SecretsProvider

_LOGGER = logging.getLogger(__name__)


class MissingSecretError(ValueError):
    """
    Raised when a logical secret cannot be resolved from the environment.
    """

    def __init__(self, secret_name: str) -> None:
        super().__init__(secret_name)
        self.secret_name = secret_name

    def __str__(self) -> str:
        return f"Secret '{self.secret_name}' is unavailable"


class EnvSecretsProvider(SecretsProvider):
    def __init__(
        self,
        prefix: str = "MARKETFEED_",
        allowed: dict[str, str] | None = None,
    ) -> None:
        """
        Configure deterministic secret lookup rules for environment-backed provider keys.
        """

        if not prefix:
            raise ValueError("Environment prefix must be a non-empty string")
        self._prefix = prefix
        # logical secret name -> environment variable suffix
        base_allowed: dict[str, str] = {
            "finnhub_api_key": "FINNHUB_API_KEY",
            "polygon_api_key": "POLYGON_API_KEY",
            "coingecko_api_key": "COINGECKO_API_KEY",
        }
        if allowed:
            base_allowed.update(allowed)
        self._allowed = base_allowed

    def get(self, secret_name: str) -> str:
        """Resolve a logical secret name to a concrete environment variable value."""

        if secret_name not in self._allowed:
            raise MissingSecretError(secret_name)

        env_var = f"{self._prefix}{self._allowed[secret_name]}"
        value = os.environ.get(env_var, "")
        # An exported-but-empty key counts as not configured
        if not value:
            raise MissingSecretError(secret_name)

        _LOGGER.debug(
            "secret_resolved",
            extra={
                "event": "secret_resolved",
                "secret_name": secret_name,
                "source": "env",
            },
        )
        return value

    def get_optional(self, secret_name: str) -> Optional[str]:
        try:
            return self.get(secret_name)
        except MissingSecretError:
            _LOGGER.debug(
                "secret_unavailable",
                extra={"event": "secret_unavailable", "secret_name": secret_name},
            )
            return None

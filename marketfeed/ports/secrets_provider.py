"""SecretsProvider Port Interface.

Contract: Retrieve secret material (provider API keys) by logical name; no persistence here.
"""

from __future__ import annotations

from typing import Optional, Protocol


class SecretsProvider(Protocol):
    def get(self, secret_name: str) -> str: ...

    """
    Retrieve a secret value using its logical name.
    Raises when the secret is unknown or unavailable.
    """

    def get_optional(self, secret_name: str) -> Optional[str]: ...

    """
    Like get(), but returns None for an unavailable secret. Optional providers
    use this to degrade gracefully when their key is not configured.
    """

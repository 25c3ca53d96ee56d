"""
Credential storage protocol and types for authbridge.

Defines the CredentialBackend Protocol that all storage backends must
satisfy, along with shared exceptions. Backends store opaque strings;
encryption happens above them, in CredentialVault.
"""

from typing import Protocol, runtime_checkable

# --- Exceptions ---


class CredentialStoreError(Exception):
    """Base exception for credential storage operations."""


class CredentialDecryptError(CredentialStoreError):
    """Raised when a stored record cannot be decrypted with the configured key."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Failed to decrypt credential record: {key}")


# --- Protocol ---


@runtime_checkable
class CredentialBackend(Protocol):
    """Protocol defining the credential storage interface.

    All methods are async. Implementations must satisfy this interface
    structurally (duck typing); no inheritance required.
    """

    async def get(self, key: str) -> str | None:
        """Retrieve a stored value.

        Args:
            key: Record key, e.g. ``session:github``.

        Returns:
            The stored value, or None if the key does not exist.
        """
        ...

    async def put(self, key: str, value: str) -> None:
        """Store a value, replacing any existing one."""
        ...

    async def delete(self, key: str) -> bool:
        """Delete a value.

        Idempotent: does not raise if the key does not exist.

        Returns:
            True if a value was deleted.
        """
        ...

    async def keys(self, prefix: str = "") -> list[str]:
        """List keys starting with a prefix, sorted."""
        ...

    async def close(self) -> None:
        """Release any resources held by the backend."""
        ...

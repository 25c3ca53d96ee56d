"""Fernet symmetric encryption for credentials at rest.

Uses AES-128-CBC + HMAC-SHA256 via the cryptography library's Fernet.
The key comes from AUTHBRIDGE_CREDENTIAL_ENCRYPTION_KEY. When none is
configured a key file is created next to the credential store and reused
on later runs.
"""

import os
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken

from authbridge.logging_config import get_logger
from authbridge.storage.protocol import CredentialDecryptError

logger = get_logger(__name__)


def load_or_create_key(key_file: str | Path) -> bytes:
    """Read the Fernet key from key_file, generating it (mode 0600) if absent."""
    path = Path(key_file).expanduser()
    if path.exists():
        return path.read_bytes().strip()

    path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    key = Fernet.generate_key()
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(key)
    logger.info("Generated credential encryption key file", key_file=str(path))
    return key


class CredentialCipher:
    """Encrypts and decrypts credential records with a single Fernet key."""

    def __init__(self, key: str | bytes) -> None:
        try:
            self._fernet = Fernet(key.encode() if isinstance(key, str) else key)
        except (ValueError, TypeError) as e:
            raise ValueError(f"Invalid credential encryption key: {e}") from None

    @classmethod
    def from_settings(cls, configured_key: str, key_file: str | Path) -> "CredentialCipher":
        """Build from the configured key, falling back to the key file."""
        if configured_key:
            logger.info("Credential encryption initialized", source="settings")
            return cls(configured_key)
        logger.info("Credential encryption initialized", source="key_file")
        return cls(load_or_create_key(key_file))

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a plaintext string. Returns base64-encoded Fernet ciphertext."""
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str, *, key: str = "") -> str:
        """Decrypt a Fernet ciphertext string. Returns plaintext."""
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken:
            raise CredentialDecryptError(key) from None

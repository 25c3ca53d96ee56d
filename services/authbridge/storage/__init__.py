"""
Credential storage layer for authbridge.

Provides build_vault() to assemble the configured backend and cipher.
"""

from __future__ import annotations

from authbridge.config import Settings, StorageBackend
from authbridge.logging_config import get_logger
from authbridge.storage.protocol import CredentialBackend
from authbridge.storage.vault import CredentialVault

logger = get_logger(__name__)


async def build_backend(settings: Settings) -> CredentialBackend:
    """Create the credential backend selected in configuration."""
    cfg = settings.storage

    match cfg.backend:
        case StorageBackend.MEMORY:
            from authbridge.storage.memory import MemoryBackend

            logger.info("Credential storage initialized", backend="memory")
            return MemoryBackend()

        case StorageBackend.FILESYSTEM:
            from authbridge.storage.filesystem import FilesystemBackend

            backend = FilesystemBackend(root_dir=cfg.filesystem.root_dir)
            logger.info(
                "Credential storage initialized",
                backend="filesystem",
                root_dir=cfg.filesystem.root_dir,
            )
            return backend

        case StorageBackend.REDIS:
            from authbridge.redis.client import init_redis
            from authbridge.storage.redis import RedisBackend

            client = await init_redis(str(cfg.redis.url))
            logger.info("Credential storage initialized", backend="redis")
            return RedisBackend(client, key_prefix=cfg.redis.key_prefix)

    raise ValueError(f"Unsupported storage backend: {cfg.backend}")


async def build_vault(settings: Settings) -> CredentialVault:
    """Create the encrypted credential vault for the bridge."""
    from authbridge.services.encryption_service import CredentialCipher

    cipher = CredentialCipher.from_settings(
        settings.credential_encryption_key, settings.storage.filesystem.key_file
    )
    return CredentialVault(await build_backend(settings), cipher)


__all__ = ["CredentialVault", "build_backend", "build_vault"]

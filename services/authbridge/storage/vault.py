"""Encrypted credential records on top of a CredentialBackend.

Records are JSON objects, encrypted as a whole before they reach the
backend. Backends never see plaintext.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from authbridge.logging_config import get_logger
from authbridge.storage.protocol import CredentialBackend, CredentialDecryptError

if TYPE_CHECKING:
    from authbridge.services.encryption_service import CredentialCipher

logger = get_logger(__name__)


class CredentialVault:
    def __init__(self, backend: CredentialBackend, cipher: CredentialCipher) -> None:
        self._backend = backend
        self._cipher = cipher

    @property
    def backend(self) -> CredentialBackend:
        return self._backend

    async def get_record(self, key: str) -> Any | None:
        """Load and decrypt one record. None when absent."""
        ciphertext = await self._backend.get(key)
        if ciphertext is None:
            return None
        return json.loads(self._cipher.decrypt(ciphertext, key=key))

    async def put_record(self, key: str, record: Any) -> None:
        await self._backend.put(key, self._cipher.encrypt(json.dumps(record)))

    async def delete(self, key: str) -> bool:
        return await self._backend.delete(key)

    async def list_records(self, prefix: str) -> dict[str, Any]:
        """Decrypt every record under prefix.

        Records that fail to decrypt (key rotated, file corrupted) are
        skipped with a warning so one bad record does not hide the rest.
        """
        records: dict[str, Any] = {}
        for key in await self._backend.keys(prefix):
            try:
                record = await self.get_record(key)
            except CredentialDecryptError:
                logger.warning("Skipping unreadable credential record", key=key)
                continue
            if record is not None:
                records[key] = record
        return records

    async def close(self) -> None:
        await self._backend.close()

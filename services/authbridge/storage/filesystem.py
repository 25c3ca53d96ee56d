"""
Filesystem credential backend for authbridge.

Uses aiofiles for async I/O against a local directory. One file per
record; record keys are percent-encoded into flat file names. Writes go
through a temporary file and an atomic replace.
"""

from __future__ import annotations

import os
import urllib.parse
from pathlib import Path

import aiofiles
import aiofiles.os

from authbridge.logging_config import get_logger
from authbridge.storage.protocol import CredentialStoreError

logger = get_logger(__name__)

_RECORD_SUFFIX = ".rec"
_TMP_SUFFIX = ".tmp"


class FilesystemBackend:
    """Credential backend backed by the local filesystem."""

    def __init__(self, root_dir: str | Path) -> None:
        self._root = Path(root_dir).expanduser()

        # Ensure root directory exists and is private to the user
        self._root.mkdir(parents=True, exist_ok=True, mode=0o700)
        logger.info("Filesystem credential store initialized", root_dir=str(self._root))

    def _full_path(self, key: str) -> Path:
        """Resolve key to a record path, rejecting keys that could escape the root."""
        if not key or key in (".", ".."):
            raise CredentialStoreError(f"Invalid key: {key!r}")
        return self._root / (urllib.parse.quote(key, safe="") + _RECORD_SUFFIX)

    @staticmethod
    def _key_from_name(name: str) -> str:
        return urllib.parse.unquote(name[: -len(_RECORD_SUFFIX)])

    async def get(self, key: str) -> str | None:
        path = self._full_path(key)
        if not path.exists():
            return None

        async with aiofiles.open(path) as f:
            return await f.read()

    async def put(self, key: str, value: str) -> None:
        path = self._full_path(key)
        tmp_path = path.with_name(path.name + _TMP_SUFFIX)

        async with aiofiles.open(tmp_path, "w") as f:
            await f.write(value)
        os.chmod(tmp_path, 0o600)
        await aiofiles.os.replace(tmp_path, path)

    async def delete(self, key: str) -> bool:
        path = self._full_path(key)
        if not path.exists():
            return False
        await aiofiles.os.remove(path)
        return True

    async def keys(self, prefix: str = "") -> list[str]:
        if not self._root.exists():
            return []
        names = await aiofiles.os.listdir(self._root)
        keys = [self._key_from_name(n) for n in names if n.endswith(_RECORD_SUFFIX)]
        return sorted(k for k in keys if k.startswith(prefix))

    async def close(self) -> None:
        """No resources to release for filesystem backend."""

    @property
    def root_dir(self) -> Path:
        """The directory holding credential records."""
        return self._root

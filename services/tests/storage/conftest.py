"""
Shared fixtures for storage tests.
"""

from __future__ import annotations

import fnmatch
import tempfile
from collections.abc import AsyncGenerator, AsyncIterator

import pytest_asyncio

from authbridge.storage.filesystem import FilesystemBackend
from authbridge.storage.redis import RedisBackend


class FakeRedis:
    """The slice of redis.asyncio.Redis the credential backend uses."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.closed = False

    async def get(self, key: str) -> str | None:
        return self.data.get(key)

    async def set(self, key: str, value: str) -> bool:
        self.data[key] = value
        return True

    async def delete(self, *keys: str) -> int:
        return sum(self.data.pop(k, None) is not None for k in keys)

    async def scan_iter(self, match: str = "*", count: int | None = None) -> AsyncIterator[str]:
        for key in list(self.data):
            if fnmatch.fnmatchcase(key, match):
                yield key

    async def ping(self) -> bool:
        if self.closed:
            raise ConnectionError("Connection closed")
        return True

    async def aclose(self) -> None:
        self.closed = True


@pytest_asyncio.fixture
async def fs_backend() -> AsyncGenerator[FilesystemBackend]:
    """Create a FilesystemBackend in a temporary directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        backend = FilesystemBackend(root_dir=tmpdir)
        yield backend
        await backend.close()


@pytest_asyncio.fixture
async def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest_asyncio.fixture
async def redis_backend(fake_redis: FakeRedis) -> RedisBackend:
    return RedisBackend(fake_redis, key_prefix="test:cred:")  # type: ignore[arg-type]

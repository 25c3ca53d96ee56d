"""In-memory credential backend.

Nothing survives the process. Used when the host keeps credentials for a
single run only, and in tests.
"""


class MemoryBackend:
    """Credential backend backed by a dict."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def put(self, key: str, value: str) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    async def keys(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self._data if k.startswith(prefix))

    async def close(self) -> None:
        """No resources to release for the memory backend."""

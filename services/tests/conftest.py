"""
Top-level test configuration for authbridge.
"""

import asyncio
import os
from collections.abc import AsyncIterator, Callable
from urllib.parse import parse_qs, urlsplit

# Ensure test-friendly defaults
os.environ.setdefault("AUTHBRIDGE_STORAGE__BACKEND", "memory")
os.environ.setdefault("AUTHBRIDGE_JSON_LOGS", "false")
os.environ.setdefault("AUTHBRIDGE_LOG_LEVEL", "DEBUG")
os.environ.setdefault("AUTHBRIDGE_CONFIG_FILE", "/nonexistent/authbridge-test-config.yaml")

import pytest  # noqa: E402
from cryptography.fernet import Fernet  # noqa: E402

from authbridge.auth.surface import SurfaceEvent, SurfaceEventKind, SurfaceOptions  # noqa: E402
from authbridge.services.encryption_service import CredentialCipher  # noqa: E402
from authbridge.storage.memory import MemoryBackend  # noqa: E402
from authbridge.storage.vault import CredentialVault  # noqa: E402


class FakeSurface:
    """In-memory NavigableSurface. Navigations run the host's script."""

    def __init__(self, options: SurfaceOptions, script: Callable | None = None) -> None:
        self.options = options
        self.navigations: list[str] = []
        self.stop_calls = 0
        self.close_calls = 0
        self._script = script
        self._queue: asyncio.Queue[SurfaceEvent] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def authorize_state(self) -> str | None:
        """The state sent to the IdP in the first navigation."""
        if not self.navigations:
            return None
        query = parse_qs(urlsplit(self.navigations[0]).query)
        return (query.get("state") or query.get("RelayState") or [None])[0]

    async def navigate(self, url: str) -> None:
        self.navigations.append(url)
        if self._script is not None:
            self._script(self, url)

    async def stop_navigation(self) -> None:
        self.stop_calls += 1

    async def close(self) -> None:
        self.close_calls += 1
        self._closed = True
        self._queue.put_nowait(SurfaceEvent(SurfaceEventKind.CLOSED))

    def emit(self, url: str, kind: SurfaceEventKind = SurfaceEventKind.NAVIGATION) -> None:
        self._queue.put_nowait(SurfaceEvent(kind, url))

    def user_close(self) -> None:
        """The user dismissed the window."""
        self._closed = True
        self._queue.put_nowait(SurfaceEvent(SurfaceEventKind.CLOSED))

    async def events(self) -> AsyncIterator[SurfaceEvent]:
        while True:
            event = await self._queue.get()
            yield event
            if event.kind is SurfaceEventKind.CLOSED:
                return


class FakeSurfaceHost:
    """SurfaceHost handing out FakeSurfaces.

    ``script(surface, url)`` runs on every navigation, so tests can play
    the identity provider.
    """

    def __init__(self, script: Callable | None = None) -> None:
        self.script = script
        self.surfaces: list[FakeSurface] = []

    async def open_surface(self, options: SurfaceOptions) -> FakeSurface:
        surface = FakeSurface(options, self.script)
        self.surfaces.append(surface)
        return surface

    async def next_surface(self) -> FakeSurface:
        """Wait until a surface has been opened and navigated."""
        async with asyncio.timeout(2):
            while not self.surfaces or not self.surfaces[-1].navigations:
                await asyncio.sleep(0)
        return self.surfaces[-1]


@pytest.fixture
def cipher() -> CredentialCipher:
    return CredentialCipher(Fernet.generate_key())


@pytest.fixture
def vault(cipher: CredentialCipher) -> CredentialVault:
    return CredentialVault(MemoryBackend(), cipher)


@pytest.fixture
def surface_host() -> FakeSurfaceHost:
    return FakeSurfaceHost()

"""Secondary login surfaces.

The host application owns the actual browsing surface and hands it to the
bridge through the SurfaceHost and NavigableSurface protocols. The
controller opens one isolated surface per flow, watches its navigations
for the flow's callback, and closes it once the flow reaches a terminal
state.
"""

import asyncio
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol, runtime_checkable

from authbridge.auth.classifier import CallbackClassifier, extract_callback_params
from authbridge.auth.correlator import FlowState, PendingAuthCorrelator, PendingAuthentication
from authbridge.auth.sessions import Session
from authbridge.auth.sso import AuthorizationRequest, SSOConnector
from authbridge.config import SurfaceConfig
from authbridge.logging_config import get_logger

logger = get_logger(__name__)


class SurfaceEventKind(StrEnum):
    NAVIGATION = "navigation"
    REDIRECT = "redirect"
    CLOSED = "closed"


@dataclass(frozen=True)
class SurfaceEvent:
    kind: SurfaceEventKind
    url: str = ""


@dataclass(frozen=True)
class SurfaceOptions:
    """How the host should present a login surface.

    The surface must not share cookies or storage with the main browsing
    surface (``partition`` names a disposable store) and must not expose
    host scripting to the loaded pages.
    """

    title: str
    width: int = 600
    height: int = 700
    isolated: bool = True
    scripts_bridged: bool = False
    partition: str = ""


@runtime_checkable
class NavigableSurface(Protocol):
    @property
    def closed(self) -> bool: ...

    async def navigate(self, url: str) -> None: ...

    async def stop_navigation(self) -> None: ...

    async def close(self) -> None: ...

    def events(self) -> AsyncIterator[SurfaceEvent]:
        """Navigations and redirects as they happen, then one CLOSED event."""
        ...


@runtime_checkable
class SurfaceHost(Protocol):
    async def open_surface(self, options: SurfaceOptions) -> NavigableSurface: ...


Completion = Callable[[str, PendingAuthentication], Awaitable[Session]]


class SecondarySurfaceController:
    """Drives interactive flows on host-provided surfaces."""

    def __init__(
        self,
        host: SurfaceHost,
        classifier: CallbackClassifier,
        correlator: PendingAuthCorrelator,
        *,
        config: SurfaceConfig | None = None,
    ) -> None:
        self._host = host
        self._classifier = classifier
        self._correlator = correlator
        self._config = config or SurfaceConfig()
        # Per-flow URL inboxes keyed by state. None marks the surface as closed.
        self._inboxes: dict[str, asyncio.Queue[str | None]] = {}

    @property
    def classifier(self) -> CallbackClassifier:
        return self._classifier

    @classifier.setter
    def classifier(self, classifier: CallbackClassifier) -> None:
        self._classifier = classifier

    @property
    def active_flows(self) -> int:
        return len(self._inboxes)

    def _options(self, connector: SSOConnector) -> SurfaceOptions:
        return SurfaceOptions(
            title=self._config.title_template.format(provider=connector.display_name),
            width=self._config.width,
            height=self._config.height,
            partition=f"authbridge-{uuid.uuid4().hex}",
        )

    async def run(
        self,
        connector: SSOConnector,
        request: AuthorizationRequest,
        pending: PendingAuthentication,
        complete: Completion,
    ) -> None:
        """Run one flow until its pending entry reaches a terminal state.

        The outcome is delivered through ``pending``. The surface is closed
        on every exit path.
        """
        surface = await self._host.open_surface(self._options(connector))
        inbox: asyncio.Queue[str | None] = asyncio.Queue()
        self._inboxes[pending.state] = inbox
        pump = asyncio.create_task(self._pump(surface, inbox))
        watcher = asyncio.create_task(self._watch(connector, pending, surface, inbox, complete))
        logger.info("Login surface opened", provider=connector.name)

        try:
            await surface.navigate(request.authorize_url)
            # Completes on success, failure, cancellation or deadline expiry.
            waiting = {pending.future, watcher, pump}
            while not pending.done:
                done, waiting = await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)
                if pump in done and pump.exception() is not None:
                    logger.warning(
                        "Login surface event stream failed",
                        provider=connector.name,
                        error=type(pump.exception()).__name__,
                    )
                    if pending.status is FlowState.AWAITING_CALLBACK:
                        self._correlator.reject(pending.state, pump.exception())
                if watcher in done and not pending.done:
                    error = watcher.exception() or RuntimeError("Surface watcher stopped")
                    self._correlator.reject(pending.state, error)
        finally:
            self._inboxes.pop(pending.state, None)
            for task in (watcher, pump):
                task.cancel()
            await asyncio.gather(watcher, pump, return_exceptions=True)
            if not surface.closed:
                await surface.close()
            logger.info("Login surface closed", provider=connector.name, status=pending.status)

    def offer(self, url: str) -> bool:
        """Route an externally delivered callback to the flow owning its state."""
        params = extract_callback_params(url)
        for state in (params.state, params.relay_state):
            inbox = self._inboxes.get(state) if state else None
            if inbox is not None:
                inbox.put_nowait(url)
                return True
        return False

    @staticmethod
    async def _pump(surface: NavigableSurface, inbox: asyncio.Queue[str | None]) -> None:
        async for event in surface.events():
            if event.kind is SurfaceEventKind.CLOSED:
                break
            inbox.put_nowait(event.url)
        inbox.put_nowait(None)

    async def _watch(
        self,
        connector: SSOConnector,
        pending: PendingAuthentication,
        surface: NavigableSurface,
        inbox: asyncio.Queue[str | None],
        complete: Completion,
    ) -> None:
        while True:
            url = await inbox.get()
            if url is None:
                logger.info("Login surface closed before callback", provider=connector.name)
                self._correlator.cancel(pending.state)
                return

            if not connector.is_callback(url, self._classifier.classify(url)):
                continue

            state = connector.callback_state(url)
            if state is None and connector.surface_bound_state:
                state = pending.state
            if state != pending.state:
                # Callback for another flow, or forged: keep watching.
                logger.warning("State mismatch: callback dropped", provider=connector.name)
                continue
            if self._correlator.claim(state) is None:
                continue

            await surface.stop_navigation()
            try:
                session = await complete(url, pending)
            except Exception as e:
                logger.warning(
                    "Authentication failed", provider=connector.name, error=type(e).__name__
                )
                self._correlator.reject(state, e)
            else:
                self._correlator.resolve(state, session)
            return

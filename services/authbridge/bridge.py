"""
AuthBridge: the caller-facing entry point.

One instance owns the provider registry, the pending-authentication table,
the session table and the ambient token table. Hosts create it once and
pass it by reference; nothing here is module-global.
"""

import functools
import secrets
from collections.abc import AsyncIterable, Mapping
from typing import Any

import httpx

from authbridge.auth import pkce
from authbridge.auth.classifier import CallbackClassifier
from authbridge.auth.connectors import build_connector
from authbridge.auth.correlator import PendingAuthCorrelator, PendingAuthentication
from authbridge.auth.errors import AuthTimeout, ProtocolError
from authbridge.auth.events import AuthEventKind, EventChannel, Subscription
from authbridge.auth.interceptor import AmbientCallbackInterceptor, StoredToken
from authbridge.auth.providers import Provider, ProviderRegistry, default_providers
from authbridge.auth.sessions import Session, SessionStore
from authbridge.auth.sso import SSOConnector
from authbridge.auth.surface import SecondarySurfaceController, SurfaceHost
from authbridge.config import Settings
from authbridge.logging_config import configure_logging, get_logger
from authbridge.storage import build_vault
from authbridge.storage.vault import CredentialVault

logger = get_logger(__name__)

REGISTRY_KEY = "registry:providers"


class AuthBridge:
    """Authentication bridge for one host application."""

    def __init__(
        self,
        settings: Settings,
        surface_host: SurfaceHost,
        *,
        vault: CredentialVault,
        registry: ProviderRegistry | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._vault = vault
        self._transport = transport
        self.events = EventChannel()

        if registry is None:
            providers = (
                default_providers(settings.redirect_uri)
                if settings.include_default_providers
                else []
            )
            registry = ProviderRegistry(
                [*providers, *settings.providers], redirect_uri=settings.redirect_uri
            )
        self._registry = registry
        self._removed: set[str] = set()
        self._connectors: dict[str, tuple[Provider, SSOConnector]] = {}

        self._correlator = PendingAuthCorrelator(settings.pending_timeout_seconds)
        self._surfaces = SecondarySurfaceController(
            surface_host,
            CallbackClassifier(self._registry.matchers()),
            self._correlator,
            config=settings.surface,
        )
        self._sessions = SessionStore(vault, self._refresh_with_connector)
        self._interceptor = AmbientCallbackInterceptor(
            vault,
            loopback_only=settings.ambient.loopback_only,
            wait_timeout=settings.ambient.wait_timeout_seconds,
            events=self.events,
        )

    @classmethod
    async def create(
        cls,
        surface_host: SurfaceHost,
        settings: Settings | None = None,
        **kwargs: Any,
    ) -> "AuthBridge":
        """Configure logging, build the credential vault and load persisted state."""
        if settings is None:
            from authbridge.config import settings as global_settings

            settings = global_settings
        configure_logging(json_logs=settings.json_logs, log_level=settings.log_level)
        vault = kwargs.pop("vault", None) or await build_vault(settings)
        bridge = cls(settings, surface_host, vault=vault, **kwargs)
        await bridge.load()
        return bridge

    # --- Lifecycle ---

    async def load(self) -> None:
        """Restore the persisted registry, sessions and ambient tokens."""
        record = await self._vault.get_record(REGISTRY_KEY)
        if record:
            self._removed = set(record.get("removed", []))
            for provider_id in self._removed:
                self._registry.remove(provider_id)
            self._registry.load(record.get("providers", []))
            self._registry_changed()
        sessions = await self._sessions.load()
        tokens = await self._interceptor.load()
        logger.info(
            "Auth bridge loaded", providers=len(self._registry), sessions=sessions, tokens=tokens
        )

    async def close(self) -> None:
        """Cancel outstanding flows, end subscriptions and release storage."""
        self._correlator.clear()
        self.events.close()
        await self._vault.close()
        logger.info("Auth bridge closed")

    # --- Provider registry ---

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    def list_providers(self) -> list[dict[str, Any]]:
        return self._registry.list_public()

    async def configure_provider(self, provider_id: str, partial: Mapping[str, Any]) -> bool:
        if not self._registry.configure(provider_id, partial):
            logger.warning("Configure ignored for unknown provider", provider=provider_id)
            return False
        self._registry_changed()
        await self._persist_registry()
        return True

    async def add_provider(self, provider: Provider | Mapping[str, Any]) -> Provider:
        if not isinstance(provider, Provider):
            provider = Provider.model_validate(provider)
        added = self._registry.add(provider)
        self._removed.discard(added.id)
        self._registry_changed()
        await self._persist_registry()
        return added

    async def remove_provider(self, provider_id: str) -> bool:
        if not self._registry.remove(provider_id):
            return False
        self._removed.add(provider_id)
        self._registry_changed()
        await self._persist_registry()
        if await self._sessions.logout(provider_id):
            self.events.publish(AuthEventKind.LOGGED_OUT, provider_id)
        return True

    def _registry_changed(self) -> None:
        self._surfaces.classifier = CallbackClassifier(self._registry.matchers())
        for provider_id in list(self._connectors):
            if self._connectors[provider_id][0] is not self._registry.get(provider_id):
                del self._connectors[provider_id]

    async def _persist_registry(self) -> None:
        await self._vault.put_record(
            REGISTRY_KEY,
            {"providers": self._registry.export(), "removed": sorted(self._removed)},
        )

    def _connector(self, provider: Provider) -> SSOConnector:
        cached = self._connectors.get(provider.id)
        if cached is not None and cached[0] is provider:
            return cached[1]
        connector = build_connector(
            provider, transport=self._transport, timeout=self._settings.http_timeout_seconds
        )
        self._connectors[provider.id] = (provider, connector)
        return connector

    # --- Interactive flows ---

    async def authenticate(self, provider_id: str, timeout: float | None = None) -> Session | None:
        """Run an interactive login on a secondary surface.

        Returns the new session, or None when the provider cannot be used
        or the user closed the surface.

        Raises:
            AuthTimeout: no callback arrived before the deadline.
            ProtocolError: the provider rejected the login or the exchange.
        """
        provider = self._registry.get(provider_id)
        if provider is None:
            logger.warning("Authentication requested for unknown provider", provider=provider_id)
            return None
        if not provider.enabled:
            logger.warning("Authentication requested for disabled provider", provider=provider_id)
            return None
        connector = self._connector(provider)
        if not connector.is_configured():
            logger.warning("Provider is not configured", provider=provider_id)
            return None

        verifier = pkce.generate_verifier() if connector.uses_pkce else None
        nonce = secrets.token_urlsafe(16) if connector.uses_nonce else None
        pending = self._correlator.begin(
            provider_id, pkce_verifier=verifier, nonce=nonce, timeout=timeout
        )
        self.events.publish(AuthEventKind.FLOW_STARTED, provider_id)
        logger.info(
            "Authentication started",
            provider=provider_id,
            protocol=connector.provider_type,
            pkce=verifier is not None,
        )

        try:
            request = await connector.build_authorization_request(
                pending.state,
                code_challenge=pkce.derive_challenge(verifier) if verifier else None,
                nonce=nonce,
            )
            await self._surfaces.run(
                connector, request, pending, functools.partial(self._complete, connector)
            )
            session = await pending
        except AuthTimeout:
            self.events.publish(AuthEventKind.TIMED_OUT, provider_id)
            raise
        except ProtocolError as e:
            self.events.publish(AuthEventKind.FAILED, provider_id, error=e.error)
            raise
        except Exception as e:
            self.events.publish(AuthEventKind.FAILED, provider_id, error=type(e).__name__)
            raise
        finally:
            if not pending.finished:
                self._correlator.cancel(pending.state)

        if session is None:
            logger.info("Authentication cancelled", provider=provider_id)
            self.events.publish(AuthEventKind.CANCELLED, provider_id)
            return None

        self.events.publish(AuthEventKind.AUTHENTICATED, provider_id, subject=session.subject_id)
        return session

    async def _complete(
        self, connector: SSOConnector, url: str, pending: PendingAuthentication
    ) -> Session:
        session = await connector.handle_callback(url, pending)
        await self._sessions.save(session)
        return session

    # --- Sessions ---

    async def get_session(self, provider_id: str) -> Session | None:
        return await self._sessions.get_session(provider_id)

    async def refresh_session(self, provider_id: str) -> bool:
        return await self._sessions.refresh_session(provider_id)

    async def logout(self, provider_id: str) -> bool:
        removed = await self._sessions.logout(provider_id)
        if removed:
            self.events.publish(AuthEventKind.LOGGED_OUT, provider_id)
        return removed

    async def logout_all(self) -> list[str]:
        provider_ids = await self._sessions.logout_all()
        for provider_id in provider_ids:
            self.events.publish(AuthEventKind.LOGGED_OUT, provider_id)
        return provider_ids

    async def _refresh_with_connector(self, session: Session) -> Session:
        provider = self._registry.get(session.provider_id)
        if provider is None:
            raise ProtocolError(
                "invalid_client", f"Provider {session.provider_id} is not registered"
            )
        refreshed = await self._connector(provider).refresh(session)
        self.events.publish(AuthEventKind.SESSION_REFRESHED, provider.id)
        return refreshed

    # --- Ambient path ---

    def is_callback_url(self, url: str) -> bool:
        return self._interceptor.is_callback_url(url)

    def identify_provider(self, url: str) -> str:
        return self._interceptor.identify_provider(url)

    async def handle_callback(self, url: str) -> StoredToken | None:
        return await self._interceptor.handle_callback(url)

    async def handle_deep_link(self, url: str) -> StoredToken | None:
        """Route a custom-scheme activation.

        An active interactive flow whose state matches takes the URL first.
        Otherwise the ambient path stores its code.
        """
        if self._surfaces.offer(url):
            logger.info("Deep link routed to active flow")
            return None
        return await self._interceptor.handle_deep_link(url)

    def get_stored_tokens(self) -> list[StoredToken]:
        return self._interceptor.get_stored_tokens()

    def get_token_for_provider(self, provider: str) -> StoredToken | None:
        return self._interceptor.get_token_for_provider(provider)

    async def remove_token(self, provider: str) -> bool:
        return await self._interceptor.remove_token(provider)

    async def clear_all_tokens(self) -> int:
        return await self._interceptor.clear_all_tokens()

    async def wait_for_callback(
        self, state: str, provider: str, timeout: float | None = None
    ) -> StoredToken:
        return await self._interceptor.wait_for_callback(state, provider, timeout)

    async def watch_requests(self, request_urls: AsyncIterable[str]) -> int:
        """Feed the main surface's outbound request URLs to the ambient interceptor."""
        if not self._settings.ambient.enabled:
            logger.info("Ambient interception disabled")
            return 0
        return await self._interceptor.run(request_urls)

    def get_status(self) -> dict[str, Any]:
        return {
            **self._interceptor.get_status(),
            "pending_flows": len(self._correlator),
            "sessions": self._sessions.provider_ids(),
        }

    # --- Status subscription ---

    def subscribe(self) -> Subscription:
        return self.events.subscribe()

"""OAuth 2.0 authorization-code and OIDC connector.

Uses authlib for JWKS-based ID token validation and httpx for discovery.
Plain auth_code providers (GitHub and friends) share this connector; they
simply have no id_token, no nonce and no discovery document.
"""

from typing import Any
from urllib.parse import urlencode

import httpx
from authlib.jose import JsonWebKey
from authlib.jose import jwt as authlib_jwt
from authlib.jose.errors import JoseError

from authbridge.auth.correlator import PendingAuthentication
from authbridge.auth.errors import ProtocolError
from authbridge.auth.pkce import CHALLENGE_METHOD
from authbridge.auth.providers import Provider
from authbridge.auth.sessions import Session, utc_now
from authbridge.auth.sso import AuthorizationRequest, SSOConnector
from authbridge.auth.token_exchange import (
    DEFAULT_HTTP_TIMEOUT,
    TokenExchangeClient,
    TokenResponse,
)
from authbridge.config import ProtocolFamily, ProviderEndpoints
from authbridge.logging_config import get_logger

logger = get_logger(__name__)

# discovery document key -> ProviderEndpoints field
_DISCOVERY_FIELDS = {
    "authorization_endpoint": "authorization_url",
    "token_endpoint": "token_url",
    "userinfo_endpoint": "userinfo_url",
    "jwks_uri": "jwks_url",
}


class OAuthConnector(SSOConnector):
    """Authorization-code connector, with OIDC extras when configured as oidc."""

    def __init__(
        self,
        provider: Provider,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
    ) -> None:
        super().__init__(provider)
        self._transport = transport
        self._timeout = timeout
        self._exchange = TokenExchangeClient(provider, transport=transport, timeout=timeout)
        self._discovery: dict[str, Any] | None = None
        self._jwks: Any | None = None

    @property
    def provider_type(self) -> str:
        return self._provider.protocol_family.value

    @property
    def is_oidc(self) -> bool:
        return self._provider.protocol_family is ProtocolFamily.OIDC

    @property
    def uses_pkce(self) -> bool:
        return self._provider.uses_pkce

    @property
    def uses_nonce(self) -> bool:
        return self.is_oidc

    @property
    def exchange(self) -> TokenExchangeClient:
        return self._exchange

    def is_configured(self) -> bool:
        endpoints = self._provider.endpoints
        if not self._provider.client_id:
            return False
        if endpoints.authorization_url and endpoints.token_url:
            return True
        return self.is_oidc and bool(endpoints.issuer_url)

    def _needs_discovery(self) -> bool:
        endpoints = self._provider.endpoints
        if not (self.is_oidc and endpoints.issuer_url):
            return False
        return not (endpoints.authorization_url and endpoints.token_url and endpoints.jwks_url)

    async def _ensure_discovery(self) -> dict[str, Any]:
        """Fetch and cache the OIDC discovery document."""
        if self._discovery is not None:
            return self._discovery

        issuer_url = self._provider.endpoints.issuer_url
        discovery_url = issuer_url.rstrip("/") + "/.well-known/openid-configuration"
        try:
            async with httpx.AsyncClient(
                transport=self._transport, timeout=self._timeout
            ) as client:
                resp = await client.get(discovery_url)
                resp.raise_for_status()
                discovery = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ProtocolError("temporarily_unavailable", f"OIDC discovery failed: {e}") from e

        if not isinstance(discovery, dict):
            raise ProtocolError(
                "temporarily_unavailable", "OIDC discovery document is not a JSON object"
            )
        self._discovery = discovery

        logger.info("OIDC discovery loaded", provider=self.name, issuer=issuer_url)
        return self._discovery

    async def resolve_endpoints(self) -> ProviderEndpoints:
        """Configured endpoints, with gaps filled from discovery."""
        endpoints = self._provider.endpoints
        if not self._needs_discovery():
            return endpoints

        discovery = await self._ensure_discovery()
        updates = {
            field_name: discovery[key]
            for key, field_name in _DISCOVERY_FIELDS.items()
            if discovery.get(key) and not getattr(endpoints, field_name)
        }
        return endpoints.model_copy(update=updates)

    async def _ensure_jwks(self, jwks_url: str) -> Any:
        """Fetch and cache JWKS for token verification."""
        if self._jwks is not None:
            return self._jwks

        try:
            async with httpx.AsyncClient(
                transport=self._transport, timeout=self._timeout
            ) as client:
                resp = await client.get(jwks_url)
                resp.raise_for_status()
                key_set = resp.json()
            if not isinstance(key_set, dict):
                raise ValueError("JWKS is not a JSON object")
            self._jwks = JsonWebKey.import_key_set(key_set)
        except (httpx.HTTPError, ValueError) as e:
            raise ProtocolError("temporarily_unavailable", f"JWKS fetch failed: {e}") from e

        return self._jwks

    async def build_authorization_request(
        self,
        state: str,
        *,
        code_challenge: str | None = None,
        nonce: str | None = None,
    ) -> AuthorizationRequest:
        """Build the authorization URL."""
        endpoints = await self.resolve_endpoints()
        if not endpoints.authorization_url:
            raise ProtocolError("invalid_request", f"No authorization endpoint for {self.name}")

        params = {
            "response_type": "code",
            "client_id": self._provider.client_id,
            "redirect_uri": self._provider.redirect_target,
            "scope": " ".join(self._provider.scopes),
            "state": state,
        }
        if code_challenge:
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = CHALLENGE_METHOD
        if self.is_oidc and nonce:
            params["nonce"] = nonce

        separator = "&" if "?" in endpoints.authorization_url else "?"
        authorize_url = f"{endpoints.authorization_url}{separator}{urlencode(params)}"
        return AuthorizationRequest(
            authorize_url=authorize_url,
            state=state,
            nonce=params.get("nonce"),
        )

    async def handle_callback(self, url: str, pending: PendingAuthentication) -> Session:
        """Exchange the authorization code for tokens and build the session."""
        params = self.callback_params(url)
        if params.error:
            raise ProtocolError(params.error, params.error_description)
        if not params.code:
            raise ProtocolError("invalid_request", "Callback carried no authorization code")

        endpoints = await self.resolve_endpoints()
        tokens = await self._exchange.exchange_code(
            params.code,
            code_verifier=pending.pkce_verifier,
            token_url=endpoints.token_url,
        )

        claims: dict[str, Any] = {}
        if self.is_oidc and tokens.id_token:
            claims.update(await self._validate_id_token(tokens.id_token, endpoints, pending.nonce))

        # Merge additional claims from the userinfo endpoint
        userinfo = await self._exchange.fetch_userinfo(
            tokens.access_token, userinfo_url=endpoints.userinfo_url
        )
        merged_claims = {**claims, **userinfo}
        session = self._session_from(tokens, merged_claims)

        logger.info(
            "OAuth authentication successful",
            provider=self.name,
            protocol=self.provider_type,
            subject=session.subject_id,
        )
        return session

    def _session_from(self, tokens: TokenResponse, claims: dict[str, Any]) -> Session:
        subject = claims.get("sub") or claims.get("id") or claims.get("login") or ""
        return Session(
            provider_id=self.name,
            subject_id=str(subject),
            access_token=tokens.access_token,
            display_name=claims.get("name") or claims.get("login"),
            email=claims.get("email"),
            refresh_token=tokens.refresh_token,
            id_token=tokens.id_token,
            expires_at=tokens.expires_at(utc_now()),
            raw_claims=claims,
        )

    async def _validate_id_token(
        self, id_token: str, endpoints: ProviderEndpoints, nonce: str | None
    ) -> dict[str, Any]:
        """Validate the id_token against the provider's JWKS and return its claims.

        Without a JWKS URL the token cannot be verified and its claims are
        not trusted.
        """
        if not endpoints.jwks_url:
            logger.debug("No JWKS URL, id_token claims not used", provider=self.name)
            return {}

        expected_issuer = endpoints.issuer_url
        if self._discovery is not None:
            expected_issuer = self._discovery.get("issuer", expected_issuer)

        claims_options: dict[str, Any] = {
            "aud": {"essential": True, "value": self._provider.client_id},
        }
        if expected_issuer:
            claims_options["iss"] = {"essential": True, "value": expected_issuer}
        if nonce:
            claims_options["nonce"] = {"essential": True, "value": nonce}

        jwks = await self._ensure_jwks(endpoints.jwks_url)
        try:
            claims = authlib_jwt.decode(id_token, jwks, claims_options=claims_options)
            claims.validate()
        except JoseError as e:
            raise ProtocolError("invalid_id_token", str(e)) from e
        return dict(claims)

    async def refresh(self, session: Session) -> Session:
        if not session.refresh_token:
            raise ProtocolError("invalid_grant", "Session has no refresh token")

        endpoints = await self.resolve_endpoints()
        tokens = await self._exchange.refresh(session.refresh_token, token_url=endpoints.token_url)

        session.access_token = tokens.access_token
        session.expires_at = tokens.expires_at(utc_now())
        if tokens.refresh_token:
            session.refresh_token = tokens.refresh_token
        if tokens.id_token:
            session.id_token = tokens.id_token
        return session

"""Authorization-code and refresh-token exchanges against a provider's token endpoint.

All requests are form-encoded POSTs with Accept: application/json. GitHub
and a few others answer form-encoded unless asked for JSON.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import httpx

from authbridge.auth.errors import ProtocolError
from authbridge.auth.providers import Provider
from authbridge.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_HTTP_TIMEOUT = 10.0


@dataclass(frozen=True)
class TokenResponse:
    """Parsed token endpoint response."""

    access_token: str = field(repr=False)
    token_type: str = "Bearer"
    refresh_token: str | None = field(default=None, repr=False)
    id_token: str | None = field(default=None, repr=False)
    expires_in: int | None = None
    scope: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "TokenResponse":
        expires_in = data.get("expires_in")
        try:
            expires_in = int(expires_in) if expires_in is not None else None
        except (TypeError, ValueError):
            expires_in = None
        return cls(
            access_token=data["access_token"],
            token_type=data.get("token_type", "Bearer"),
            refresh_token=data.get("refresh_token"),
            id_token=data.get("id_token"),
            expires_in=expires_in,
            scope=data.get("scope"),
            raw=data,
        )

    def expires_at(self, now: datetime) -> datetime | None:
        """Absolute expiry, or None when the provider did not say."""
        if self.expires_in is None:
            return None
        return now + timedelta(seconds=self.expires_in)


class TokenExchangeClient:
    """HTTP client for one provider's token and userinfo endpoints."""

    def __init__(
        self,
        provider: Provider,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
    ) -> None:
        self._provider = provider
        self._transport = transport
        self._timeout = timeout

    @property
    def provider(self) -> Provider:
        return self._provider

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=self._timeout)

    async def exchange_code(
        self,
        code: str,
        *,
        code_verifier: str | None = None,
        token_url: str | None = None,
    ) -> TokenResponse:
        """Exchange an authorization code for tokens."""
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self._provider.redirect_target,
            "client_id": self._provider.client_id,
        }
        if code_verifier:
            data["code_verifier"] = code_verifier
        return await self._post_token(data, token_url)

    async def refresh(self, refresh_token: str, *, token_url: str | None = None) -> TokenResponse:
        """Trade a refresh token for a new access token."""
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self._provider.client_id,
        }
        return await self._post_token(data, token_url)

    async def fetch_userinfo(
        self, access_token: str, *, userinfo_url: str | None = None
    ) -> dict[str, Any]:
        """Call the userinfo endpoint and return claims.

        Returns empty dict on failure (non-fatal).
        """
        url = userinfo_url or self._provider.endpoints.userinfo_url
        if not access_token or not url:
            return {}

        try:
            async with self._client() as client:
                resp = await client.get(
                    url,
                    headers={
                        "Authorization": f"Bearer {access_token}",
                        "Accept": "application/json",
                    },
                )
                resp.raise_for_status()
                userinfo = resp.json()
        except Exception:
            logger.warning("Failed to fetch userinfo", provider=self._provider.id, exc_info=True)
            return {}

        if not isinstance(userinfo, dict):
            return {}
        logger.debug("Fetched userinfo", provider=self._provider.id, claims=list(userinfo.keys()))
        return userinfo

    async def _post_token(self, data: dict[str, str], token_url: str | None) -> TokenResponse:
        url = token_url or self._provider.endpoints.token_url
        if not url:
            raise ProtocolError("invalid_request", f"No token endpoint for {self._provider.id}")

        if self._provider.is_confidential:
            data["client_secret"] = self._provider.client_secret.get_secret_value()

        try:
            async with self._client() as client:
                resp = await client.post(url, data=data, headers={"Accept": "application/json"})
        except httpx.HTTPError as e:
            logger.warning(
                "Token endpoint unreachable",
                provider=self._provider.id,
                grant_type=data["grant_type"],
                error=type(e).__name__,
            )
            raise ProtocolError("temporarily_unavailable", str(e) or type(e).__name__) from e

        body = _json_body(resp)
        if "error" in body:
            logger.warning(
                "Token endpoint returned error",
                provider=self._provider.id,
                grant_type=data["grant_type"],
                error=body["error"],
            )
            raise ProtocolError(str(body["error"]), body.get("error_description"))
        if resp.is_error:
            raise ProtocolError(f"http_{resp.status_code}", resp.reason_phrase or None)
        if not body.get("access_token"):
            raise ProtocolError("invalid_response", "Token response has no access_token")

        logger.info(
            "Token exchange succeeded",
            provider=self._provider.id,
            grant_type=data["grant_type"],
            has_refresh_token="refresh_token" in body,
        )
        return TokenResponse.from_json(body)


def _json_body(resp: httpx.Response) -> dict[str, Any]:
    try:
        body = resp.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}

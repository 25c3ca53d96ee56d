"""Identity provider registry.

An ordered, instance-owned catalog of providers. Order matters: the
callback classifier built from it resolves pattern ties by registry order.
Client secrets never leave the registry through list_public() or export().
"""

import os
from collections.abc import Iterable, Iterator, Mapping
from typing import Any

from pydantic import SecretStr

from authbridge.auth.classifier import CallbackMatcher
from authbridge.config import (
    DEFAULT_REDIRECT_URI,
    ProtocolFamily,
    ProviderConfig,
    ProviderEndpoints,
)
from authbridge.logging_config import get_logger

logger = get_logger(__name__)

Provider = ProviderConfig

# Environment variable overrides for client secrets.
# e.g. AUTHBRIDGE_AZURE_AD_CLIENT_SECRET for provider "azure-ad".
_SECRET_ENV_PREFIX = "AUTHBRIDGE_"
_SECRET_ENV_SUFFIX = "_CLIENT_SECRET"


def secret_env_var(provider_id: str) -> str:
    return f"{_SECRET_ENV_PREFIX}{provider_id.upper().replace('-', '_')}{_SECRET_ENV_SUFFIX}"


def default_providers(redirect_uri: str = DEFAULT_REDIRECT_URI) -> list[Provider]:
    """Pre-configured enterprise providers. Client ids must be configured by the user."""
    return [
        Provider(
            id="azure-ad",
            display_name="Microsoft Azure AD",
            protocol_family=ProtocolFamily.OIDC,
            endpoints=ProviderEndpoints(
                authorization_url="https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
                token_url="https://login.microsoftonline.com/common/oauth2/v2.0/token",
                userinfo_url="https://graph.microsoft.com/oidc/userinfo",
            ),
            scopes=("openid", "profile", "email", "offline_access"),
            redirect_target=redirect_uri,
            uses_pkce=True,
            keywords=("microsoftonline", "azure"),
        ),
        Provider(
            id="google-workspace",
            display_name="Google Workspace",
            protocol_family=ProtocolFamily.OIDC,
            endpoints=ProviderEndpoints(
                authorization_url="https://accounts.google.com/o/oauth2/v2/auth",
                token_url="https://oauth2.googleapis.com/token",
                userinfo_url="https://openidconnect.googleapis.com/v1/userinfo",
                jwks_url="https://www.googleapis.com/oauth2/v3/certs",
                issuer_url="https://accounts.google.com",
            ),
            scopes=("openid", "profile", "email"),
            redirect_target=redirect_uri,
            uses_pkce=True,
            keywords=("google",),
        ),
        Provider(
            id="okta",
            display_name="Okta",
            protocol_family=ProtocolFamily.OIDC,
            # e.g. https://your-domain.okta.com/oauth2/default/v1/authorize
            endpoints=ProviderEndpoints(),
            scopes=("openid", "profile", "email"),
            redirect_target=redirect_uri,
            uses_pkce=True,
            keywords=("okta",),
        ),
        Provider(
            id="github",
            display_name="GitHub",
            protocol_family=ProtocolFamily.AUTH_CODE,
            endpoints=ProviderEndpoints(
                authorization_url="https://github.com/login/oauth/authorize",
                token_url="https://github.com/login/oauth/access_token",
                userinfo_url="https://api.github.com/user",
            ),
            scopes=("read:user", "user:email"),
            redirect_target=redirect_uri,
            keywords=("github",),
        ),
    ]


class ProviderRegistry:
    """Ordered table of providers keyed by id."""

    def __init__(
        self,
        providers: Iterable[Provider] = (),
        *,
        redirect_uri: str = DEFAULT_REDIRECT_URI,
    ) -> None:
        self._redirect_uri = redirect_uri
        self._providers: dict[str, Provider] = {}
        for provider in providers:
            self.add(provider)

    def _normalize(self, provider: Provider) -> Provider:
        updates: dict[str, Any] = {}
        if not provider.redirect_target:
            updates["redirect_target"] = self._redirect_uri

        # Inject client_secret from env var if not set in config.
        if not provider.is_confidential:
            env_key = secret_env_var(provider.id)
            env_secret = os.environ.get(env_key, "")
            if env_secret:
                updates["client_secret"] = SecretStr(env_secret)
                logger.debug("Loaded client_secret from env", provider=provider.id, env_var=env_key)

        return provider.model_copy(update=updates) if updates else provider

    def __len__(self) -> int:
        return len(self._providers)

    def __iter__(self) -> Iterator[Provider]:
        return iter(list(self._providers.values()))

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._providers

    def get(self, provider_id: str) -> Provider | None:
        return self._providers.get(provider_id)

    def add(self, provider: Provider) -> Provider:
        """Register a provider, replacing (and moving to the end) any with the same id."""
        self._providers.pop(provider.id, None)
        normalized = self._normalize(provider)
        self._providers[provider.id] = normalized
        logger.info(
            "Registered provider",
            provider=provider.id,
            protocol=normalized.protocol_family.value,
        )
        return normalized

    def remove(self, provider_id: str) -> bool:
        removed = self._providers.pop(provider_id, None) is not None
        if removed:
            logger.info("Removed provider", provider=provider_id)
        return removed

    def configure(self, provider_id: str, partial: Mapping[str, Any]) -> bool:
        """Merge a partial configuration into a provider.

        Keys may name top-level provider fields or endpoint fields. Returns
        False when the provider is unknown; raises ValueError for unknown keys
        or values that fail validation.
        """
        provider = self._providers.get(provider_id)
        if provider is None:
            return False

        data = provider.model_dump()
        endpoints = dict(data["endpoints"])
        for key, value in partial.items():
            if key == "id":
                raise ValueError("provider id cannot be reconfigured")
            if key == "endpoints":
                endpoints.update(value)
            elif key in ProviderEndpoints.model_fields:
                endpoints[key] = value
            elif key in ProviderConfig.model_fields:
                data[key] = value
            else:
                raise ValueError(f"Unknown provider setting: {key}")
        data["endpoints"] = endpoints

        updated = self._normalize(ProviderConfig.model_validate(data))
        self._providers[provider_id] = updated
        logger.info("Reconfigured provider", provider=provider_id, keys=sorted(partial))
        return True

    def list_public(self) -> list[dict[str, Any]]:
        """All providers with secrets stripped."""
        return [
            p.model_dump(mode="json", exclude={"client_secret"}) for p in self._providers.values()
        ]

    def export(self) -> list[dict[str, Any]]:
        """Non-secret provider records for persistence."""
        return self.list_public()

    def load(self, records: Iterable[Mapping[str, Any]]) -> None:
        """Restore persisted non-secret records, keeping in-memory secrets."""
        for record in records:
            data = dict(record)
            data.pop("client_secret", None)
            existing = self._providers.get(data.get("id", ""))
            if existing is not None and existing.is_confidential:
                data["client_secret"] = existing.client_secret
            self.add(ProviderConfig.model_validate(data))

    def matchers(self) -> list[CallbackMatcher]:
        """Callback matchers for enabled providers, in registry order."""
        return [
            CallbackMatcher.build(p.id, p.callback_patterns, p.keywords or (p.id,))
            for p in self._providers.values()
            if p.enabled
        ]

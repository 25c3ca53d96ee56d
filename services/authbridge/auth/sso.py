"""SSO connector base abstraction.

Defines the interface every protocol connector implements, plus the
AuthorizationRequest handed to the secondary surface.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from urllib.parse import urlsplit

from authbridge.auth.classifier import CallbackParams, Classification, extract_callback_params
from authbridge.auth.correlator import PendingAuthentication
from authbridge.auth.providers import Provider
from authbridge.auth.sessions import Session


@dataclass
class AuthorizationRequest:
    """Data needed to send the surface to the IdP."""

    authorize_url: str = field(repr=False)
    state: str = field(repr=False)
    nonce: str | None = field(default=None, repr=False)  # OIDC nonce for replay protection


def same_endpoint(url: str, target: str) -> bool:
    """True when url points at target, ignoring query and fragment."""
    if not target:
        return False
    a, b = urlsplit(url), urlsplit(target)
    return (
        a.scheme.lower() == b.scheme.lower()
        and a.netloc.lower() == b.netloc.lower()
        and a.path.rstrip("/") == b.path.rstrip("/")
    )


class SSOConnector(ABC):
    """Abstract base class for all identity provider connectors."""

    # When True, a callback without its own state is attributed to the
    # flow that owns the surface it arrived on.
    surface_bound_state = False

    def __init__(self, provider: Provider) -> None:
        self._provider = provider

    @property
    def provider(self) -> Provider:
        return self._provider

    @property
    def name(self) -> str:
        return self._provider.id

    @property
    def display_name(self) -> str:
        """Human-readable label for login UI. Falls back to name."""
        return self._provider.label

    @property
    @abstractmethod
    def provider_type(self) -> str:
        """Provider protocol type: 'auth_code', 'oidc' or 'saml'."""

    @property
    def uses_pkce(self) -> bool:
        return False

    @property
    def uses_nonce(self) -> bool:
        return False

    @abstractmethod
    def is_configured(self) -> bool:
        """True when enough is configured to start a flow."""

    @abstractmethod
    async def build_authorization_request(
        self,
        state: str,
        *,
        code_challenge: str | None = None,
        nonce: str | None = None,
    ) -> AuthorizationRequest:
        """Build the IdP authorization URL.

        Args:
            state: Correlator-generated state for the IdP redirect.
            code_challenge: PKCE S256 challenge, when the provider uses PKCE.
            nonce: OIDC nonce bound into the id_token.

        Returns:
            AuthorizationRequest with the URL to navigate the surface to.
        """

    def is_callback(self, url: str, classification: Classification) -> bool:
        """Whether an observed navigation is this flow's callback.

        A classifier positive or a hit on the registered redirect target
        both count, so error-only callbacks are not missed.
        """
        return classification.is_callback or same_endpoint(url, self._provider.redirect_target)

    def callback_params(self, url: str) -> CallbackParams:
        return extract_callback_params(url)

    def callback_state(self, url: str) -> str | None:
        return self.callback_params(url).state

    @abstractmethod
    async def handle_callback(self, url: str, pending: PendingAuthentication) -> Session:
        """Turn a correlated callback into a Session.

        Raises:
            ProtocolError: the IdP reported an error or the exchange failed.
        """

    @abstractmethod
    async def refresh(self, session: Session) -> Session:
        """Refresh a session in place and return it.

        Raises:
            ProtocolError: the refresh grant failed or is unsupported.
        """

"""SSO connector factory.

Builds the protocol connector for a provider from its protocol family.
"""

import httpx

from authbridge.auth.providers import Provider
from authbridge.auth.sso import SSOConnector
from authbridge.auth.token_exchange import DEFAULT_HTTP_TIMEOUT
from authbridge.config import ProtocolFamily


def build_connector(
    provider: Provider,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    timeout: float = DEFAULT_HTTP_TIMEOUT,
) -> SSOConnector:
    """Create the connector for a provider."""
    from authbridge.auth.connectors.oidc import OAuthConnector
    from authbridge.auth.connectors.saml import SAMLConnector

    match provider.protocol_family:
        case ProtocolFamily.SAML:
            return SAMLConnector(provider)
        case ProtocolFamily.AUTH_CODE | ProtocolFamily.OIDC:
            return OAuthConnector(provider, transport=transport, timeout=timeout)

    raise ValueError(f"Unsupported protocol family: {provider.protocol_family}")

"""SAML 2.0 identity provider connector (simplified redirect flow).

Uses python3-saml to build the AuthnRequest, sends the surface to the IdP
entry point and completes when the surface reaches the assertion consumer URL.

Known gap: the SAMLResponse is NOT validated. No XML signature check
against the IdP certificate, no audience, conditions or replay checks.
The resulting session carries a placeholder subject and is flagged
``signature_validated: False``. Do not treat it as proof of identity.
"""

from typing import Any
from urllib.parse import urlencode

from onelogin.saml2.authn_request import OneLogin_Saml2_Authn_Request
from onelogin.saml2.errors import OneLogin_Saml2_Error
from onelogin.saml2.settings import OneLogin_Saml2_Settings

from authbridge.auth.classifier import Classification
from authbridge.auth.correlator import PendingAuthentication
from authbridge.auth.errors import ProtocolError
from authbridge.auth.sessions import Session
from authbridge.auth.sso import AuthorizationRequest, SSOConnector, same_endpoint
from authbridge.logging_config import get_logger

logger = get_logger(__name__)

HTTP_POST_BINDING = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-POST"
HTTP_REDIRECT_BINDING = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-Redirect"
PLACEHOLDER_SUBJECT = "saml-user"


def saml_settings(sp_entity_id: str, acs_url: str, entry_point: str) -> dict[str, Any]:
    """Build the python3-saml settings dict for one SP/IdP pair."""
    return {
        "strict": True,
        "sp": {
            "entityId": sp_entity_id,
            "assertionConsumerService": {
                "url": acs_url,
                "binding": HTTP_POST_BINDING,
            },
        },
        "idp": {
            "entityId": entry_point,
            "singleSignOnService": {
                "url": entry_point,
                "binding": HTTP_REDIRECT_BINDING,
            },
        },
    }


def build_authn_request(
    sp_entity_id: str, acs_url: str, entry_point: str
) -> OneLogin_Saml2_Authn_Request:
    """Build an AuthnRequest addressed to ``entry_point``.

    Returns the python3-saml request object. Its ``get_request(deflate=False)``
    is the base64 form sent as SAMLRequest.
    """
    try:
        # No IdP certificate is configured, so only the SP half is validated.
        settings = OneLogin_Saml2_Settings(
            saml_settings(sp_entity_id, acs_url, entry_point), sp_validation_only=True
        )
    except OneLogin_Saml2_Error as e:
        raise ProtocolError("invalid_request", f"Invalid SAML settings: {e}") from e
    return OneLogin_Saml2_Authn_Request(settings)


class SAMLConnector(SSOConnector):
    """SAML 2.0 identity provider connector."""

    surface_bound_state = True

    @property
    def provider_type(self) -> str:
        return "saml"

    @property
    def acs_url(self) -> str:
        return self._provider.endpoints.acs_url or self._provider.redirect_target

    def is_configured(self) -> bool:
        endpoints = self._provider.endpoints
        return bool(endpoints.entry_point and self.acs_url)

    async def build_authorization_request(
        self,
        state: str,
        *,
        code_challenge: str | None = None,
        nonce: str | None = None,
    ) -> AuthorizationRequest:
        """Build the IdP SSO URL carrying SAMLRequest and RelayState."""
        endpoints = self._provider.endpoints
        if not endpoints.entry_point:
            raise ProtocolError("invalid_request", f"No SAML entry point for {self.name}")

        authn_request = build_authn_request(
            endpoints.sp_entity_id or self._provider.client_id,
            self.acs_url,
            endpoints.entry_point,
        )
        # Base64 without deflate, accepted by IdPs that allow the POST-style encoding.
        saml_request = authn_request.get_request(deflate=False)
        logger.debug(
            "SAML AuthnRequest built", provider=self.name, request_id=authn_request.get_id()
        )
        query = urlencode({"SAMLRequest": saml_request, "RelayState": state})
        separator = "&" if "?" in endpoints.entry_point else "?"
        return AuthorizationRequest(
            authorize_url=f"{endpoints.entry_point}{separator}{query}",
            state=state,
        )

    def is_callback(self, url: str, classification: Classification) -> bool:
        return same_endpoint(url, self.acs_url)

    def callback_state(self, url: str) -> str | None:
        params = self.callback_params(url)
        return params.relay_state or params.state

    async def handle_callback(self, url: str, pending: PendingAuthentication) -> Session:
        params = self.callback_params(url)
        if params.error:
            raise ProtocolError(params.error, params.error_description)

        logger.warning(
            "SAML response accepted without signature validation",
            provider=self.name,
            has_saml_response=params.saml_response is not None,
        )
        return Session(
            provider_id=self.name,
            subject_id=PLACEHOLDER_SUBJECT,
            access_token="",
            raw_claims={"signature_validated": False},
        )

    async def refresh(self, session: Session) -> Session:
        raise ProtocolError("unsupported_grant_type", "SAML sessions cannot be refreshed")

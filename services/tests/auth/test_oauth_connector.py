"""Tests for the OAuth / OIDC connector."""

import time
from datetime import UTC, datetime, timedelta
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
from authlib.jose import JsonWebKey
from authlib.jose import jwt as authlib_jwt

from authbridge.auth.classifier import Classification, NoMatch
from authbridge.auth.connectors import build_connector
from authbridge.auth.connectors.oidc import OAuthConnector
from authbridge.auth.connectors.saml import SAMLConnector
from authbridge.auth.correlator import PendingAuthCorrelator
from authbridge.auth.errors import ProtocolError
from authbridge.auth.pkce import derive_challenge
from authbridge.auth.providers import Provider
from authbridge.auth.sessions import Session, SessionStore
from authbridge.config import ProtocolFamily, ProviderEndpoints

ISSUER = "https://idp.example"
REDIRECT = "https://app.example/callback"
NO_MATCH = Classification(False, "unknown", NoMatch())


def _github(**overrides) -> Provider:
    values = {
        "id": "github",
        "display_name": "GitHub",
        "protocol_family": ProtocolFamily.AUTH_CODE,
        "client_id": "gh-client",
        "redirect_target": REDIRECT,
        "scopes": ("read:user", "user:email"),
        "endpoints": ProviderEndpoints(
            authorization_url="https://github.com/login/oauth/authorize",
            token_url="https://github.com/login/oauth/access_token",
            userinfo_url="https://api.github.com/user",
        ),
    }
    values.update(overrides)
    return Provider(**values)


def _oidc(**overrides) -> Provider:
    values = {
        "id": "okta",
        "protocol_family": ProtocolFamily.OIDC,
        "client_id": "okta-client",
        "redirect_target": REDIRECT,
        "scopes": ("openid", "email"),
        "uses_pkce": True,
        "endpoints": ProviderEndpoints(issuer_url=ISSUER),
    }
    values.update(overrides)
    return Provider(**values)


def _query(url: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


@pytest.fixture(scope="module")
def signing_key():
    return JsonWebKey.generate_key("RSA", 2048, is_private=True, options={"kid": "test-key"})


def _id_token(key, **claims) -> str:
    now = int(time.time())
    payload = {
        "iss": ISSUER,
        "aud": "okta-client",
        "sub": "user-123",
        "iat": now,
        "exp": now + 300,
        **claims,
    }
    return authlib_jwt.encode({"alg": "RS256", "kid": "test-key"}, payload, key).decode()


def _idp_handler(signing_key, token_body: dict, userinfo: dict | None = None):
    """Fake OIDC provider: discovery, JWKS, token and userinfo endpoints."""
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        path = request.url.path
        if path == "/.well-known/openid-configuration":
            return httpx.Response(
                200,
                json={
                    "issuer": ISSUER,
                    "authorization_endpoint": f"{ISSUER}/authorize",
                    "token_endpoint": f"{ISSUER}/token",
                    "userinfo_endpoint": f"{ISSUER}/userinfo",
                    "jwks_uri": f"{ISSUER}/jwks",
                },
            )
        if path == "/jwks":
            public_key = signing_key.as_dict(is_private=False, kid="test-key")
            return httpx.Response(200, json={"keys": [public_key]})
        if path == "/token":
            return httpx.Response(200, json=token_body)
        if path == "/userinfo":
            return httpx.Response(200, json=userinfo or {})
        return httpx.Response(404)

    handler.seen = seen
    return handler


class TestBuildConnector:
    def test_protocol_families(self):
        assert isinstance(build_connector(_github()), OAuthConnector)
        assert isinstance(build_connector(_oidc()), OAuthConnector)
        saml = Provider(id="corp", protocol_family=ProtocolFamily.SAML)
        assert isinstance(build_connector(saml), SAMLConnector)

    def test_connector_names(self):
        connector = build_connector(_github())
        assert connector.name == "github"
        assert connector.display_name == "GitHub"
        assert connector.provider_type == "auth_code"


class TestIsConfigured:
    def test_requires_client_id(self):
        assert not OAuthConnector(_github(client_id="")).is_configured()

    def test_explicit_endpoints(self):
        assert OAuthConnector(_github()).is_configured()

    def test_issuer_is_enough_for_oidc(self):
        assert OAuthConnector(_oidc()).is_configured()

    def test_empty_endpoints(self):
        assert not OAuthConnector(_oidc(endpoints=ProviderEndpoints())).is_configured()


class TestAuthorizationRequest:
    async def test_auth_code_url(self):
        connector = OAuthConnector(_github())
        request = await connector.build_authorization_request("state-1")

        assert request.authorize_url.startswith("https://github.com/login/oauth/authorize?")
        assert _query(request.authorize_url) == {
            "response_type": "code",
            "client_id": "gh-client",
            "redirect_uri": REDIRECT,
            "scope": "read:user user:email",
            "state": "state-1",
        }
        assert request.nonce is None

    async def test_pkce_and_nonce_for_oidc(self, signing_key):
        handler = _idp_handler(signing_key, {})
        connector = OAuthConnector(_oidc(), transport=httpx.MockTransport(handler))
        challenge = derive_challenge("v" * 43)

        request = await connector.build_authorization_request(
            "state-2", code_challenge=challenge, nonce="nonce-1"
        )

        query = _query(request.authorize_url)
        assert request.authorize_url.startswith(f"{ISSUER}/authorize?")
        assert query["code_challenge"] == challenge
        assert query["code_challenge_method"] == "S256"
        assert query["nonce"] == "nonce-1"
        assert request.nonce == "nonce-1"

    async def test_auth_code_ignores_nonce(self):
        connector = OAuthConnector(_github())
        request = await connector.build_authorization_request("s", nonce="n")
        assert "nonce" not in _query(request.authorize_url)

    async def test_discovery_is_cached(self, signing_key):
        handler = _idp_handler(signing_key, {})
        connector = OAuthConnector(_oidc(), transport=httpx.MockTransport(handler))
        await connector.build_authorization_request("a")
        await connector.build_authorization_request("b")
        discovery_calls = [r for r in handler.seen if "well-known" in r.url.path]
        assert len(discovery_calls) == 1

    async def test_discovery_failure(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(500))
        connector = OAuthConnector(_oidc(), transport=transport)
        with pytest.raises(ProtocolError) as exc_info:
            await connector.build_authorization_request("s")
        assert exc_info.value.error == "temporarily_unavailable"

    @pytest.mark.parametrize("body", [[], "issuer", 42])
    async def test_discovery_document_not_an_object(self, body):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json=body)

        connector = OAuthConnector(_oidc(), transport=httpx.MockTransport(handler))
        for state in ("a", "b"):
            with pytest.raises(ProtocolError) as exc_info:
                await connector.build_authorization_request(state)
            assert exc_info.value.error == "temporarily_unavailable"
        # A rejected document is not cached.
        assert len(calls) == 2


class TestIsCallback:
    def test_redirect_target_counts_without_classifier(self):
        connector = OAuthConnector(_github())
        assert connector.is_callback(f"{REDIRECT}?error=access_denied&state=s", NO_MATCH)
        assert not connector.is_callback("https://github.com/login", NO_MATCH)


class TestHandleCallback:
    async def test_github_exchange_and_userinfo(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/login/oauth/access_token":
                return httpx.Response(200, json={"access_token": "tok1", "token_type": "bearer"})
            return httpx.Response(
                200, json={"id": 42, "login": "octocat", "email": "octo@example.com"}
            )

        connector = OAuthConnector(_github(), transport=httpx.MockTransport(handler))
        correlator = PendingAuthCorrelator()
        pending = correlator.begin("github")

        session = await connector.handle_callback(
            f"{REDIRECT}?code=abc123&state={pending.state}", pending
        )

        assert session.provider_id == "github"
        assert session.access_token == "tok1"
        assert session.subject_id == "42"
        assert session.display_name == "octocat"
        assert session.email == "octo@example.com"
        assert session.expires_at is None
        correlator.clear()

    async def test_error_callback(self):
        connector = OAuthConnector(_github())
        correlator = PendingAuthCorrelator()
        pending = correlator.begin("github")

        with pytest.raises(ProtocolError) as exc_info:
            await connector.handle_callback(
                f"{REDIRECT}?error=access_denied&error_description=Denied&state=x", pending
            )
        assert exc_info.value.error == "access_denied"
        assert exc_info.value.description == "Denied"
        correlator.clear()

    async def test_missing_code(self):
        connector = OAuthConnector(_github())
        correlator = PendingAuthCorrelator()
        pending = correlator.begin("github")
        with pytest.raises(ProtocolError):
            await connector.handle_callback(f"{REDIRECT}?state=x", pending)
        correlator.clear()

    async def test_oidc_validates_id_token(self, signing_key):
        id_token = _id_token(signing_key, nonce="nonce-1", email="id@example.com")
        handler = _idp_handler(
            signing_key,
            {"access_token": "at", "id_token": id_token, "refresh_token": "rt", "expires_in": 60},
            userinfo={"name": "Ida"},
        )
        connector = OAuthConnector(_oidc(), transport=httpx.MockTransport(handler))
        correlator = PendingAuthCorrelator()
        pending = correlator.begin("okta", pkce_verifier="v" * 43, nonce="nonce-1")

        session = await connector.handle_callback(f"{REDIRECT}?code=c1&state=s", pending)

        assert session.subject_id == "user-123"
        assert session.email == "id@example.com"
        assert session.display_name == "Ida"
        assert session.id_token == id_token
        assert session.refresh_token == "rt"
        assert session.expires_at is not None

        token_request = next(r for r in handler.seen if r.url.path == "/token")
        form = {k: v[0] for k, v in parse_qs(token_request.content.decode()).items()}
        assert form["code_verifier"] == "v" * 43
        correlator.clear()

    async def test_oidc_nonce_mismatch(self, signing_key):
        id_token = _id_token(signing_key, nonce="someone-else")
        handler = _idp_handler(signing_key, {"access_token": "at", "id_token": id_token})
        connector = OAuthConnector(_oidc(), transport=httpx.MockTransport(handler))
        correlator = PendingAuthCorrelator()
        pending = correlator.begin("okta", nonce="nonce-1")

        with pytest.raises(ProtocolError) as exc_info:
            await connector.handle_callback(f"{REDIRECT}?code=c1&state=s", pending)
        assert exc_info.value.error == "invalid_id_token"
        correlator.clear()

    async def test_oidc_wrong_audience(self, signing_key):
        id_token = _id_token(signing_key, aud="another-client", nonce="n")
        handler = _idp_handler(signing_key, {"access_token": "at", "id_token": id_token})
        connector = OAuthConnector(_oidc(), transport=httpx.MockTransport(handler))
        correlator = PendingAuthCorrelator()
        pending = correlator.begin("okta", nonce="n")

        with pytest.raises(ProtocolError):
            await connector.handle_callback(f"{REDIRECT}?code=c1&state=s", pending)
        correlator.clear()


class TestJwks:
    async def test_key_set_not_an_object(self):
        def handler(request):
            if request.url.path == "/token":
                return httpx.Response(200, json={"access_token": "a", "id_token": "x.y.z"})
            return httpx.Response(200, json=[])

        provider = _oidc(
            endpoints=ProviderEndpoints(
                authorization_url=f"{ISSUER}/authorize",
                token_url=f"{ISSUER}/token",
                jwks_url=f"{ISSUER}/jwks",
            )
        )
        connector = OAuthConnector(provider, transport=httpx.MockTransport(handler))
        correlator = PendingAuthCorrelator()
        pending = correlator.begin("okta", nonce="n")

        with pytest.raises(ProtocolError) as exc_info:
            await connector.handle_callback(f"{REDIRECT}?code=c1&state=s", pending)
        assert exc_info.value.error == "temporarily_unavailable"
        correlator.clear()


class TestRefresh:
    async def test_refresh_updates_in_place(self):
        transport = httpx.MockTransport(
            lambda request: httpx.Response(
                200, json={"access_token": "new", "expires_in": 3600, "refresh_token": "r2"}
            )
        )
        connector = OAuthConnector(_github(), transport=transport)
        session = Session(
            provider_id="github", subject_id="1", access_token="old", refresh_token="r1"
        )

        refreshed = await connector.refresh(session)

        assert refreshed is session
        assert session.access_token == "new"
        assert session.refresh_token == "r2"
        assert session.expires_at is not None

    async def test_refresh_without_token(self):
        connector = OAuthConnector(_github())
        session = Session(provider_id="github", subject_id="1", access_token="old")
        with pytest.raises(ProtocolError):
            await connector.refresh(session)

    async def test_malformed_discovery_during_lazy_refresh(self, vault):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json=[]))
        connector = OAuthConnector(_oidc(), transport=transport)
        store = SessionStore(vault, connector.refresh)
        await store.save(
            Session(
                provider_id="okta",
                subject_id="u1",
                access_token="old",
                refresh_token="r1",
                expires_at=datetime.now(UTC) - timedelta(minutes=5),
            )
        )

        assert await store.get_session("okta") is None
        assert not await store.refresh_session("okta")

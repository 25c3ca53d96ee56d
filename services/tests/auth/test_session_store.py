"""Tests for the session store and lazy refresh."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from authbridge.auth.errors import ProtocolError
from authbridge.auth.sessions import SESSION_PREFIX, Session, SessionStore

NOW = datetime(2026, 5, 1, 12, 0, tzinfo=UTC)


class _Refresher:
    def __init__(self, *, fail: bool = False, delay: float = 0.0) -> None:
        self.calls = 0
        self.fail = fail
        self.delay = delay

    async def __call__(self, session: Session) -> Session:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ProtocolError("invalid_grant", "refresh token revoked")
        session.access_token = f"refreshed-{self.calls}"
        session.expires_at = NOW + timedelta(hours=1)
        return session


def _session(**overrides) -> Session:
    values = {"provider_id": "okta", "subject_id": "u1", "access_token": "tok1"}
    values.update(overrides)
    return Session(**values)


@pytest.fixture
def refresher() -> _Refresher:
    return _Refresher()


@pytest.fixture
def store(vault, refresher) -> SessionStore:
    return SessionStore(vault, refresher, clock=lambda: NOW)


class TestSession:
    def test_expiry(self):
        assert not _session().is_expired(NOW)
        assert _session(expires_at=NOW).is_expired(NOW)
        assert not _session(expires_at=NOW + timedelta(seconds=1)).is_expired(NOW)

    def test_tokens_hidden_from_repr(self):
        session = _session(refresh_token="rt-secret", id_token="idt-secret")
        text = repr(session)
        assert "tok1" not in text
        assert "rt-secret" not in text
        assert "idt-secret" not in text

    def test_record_round_trip(self):
        session = _session(expires_at=NOW, raw_claims={"sub": "u1"}, email="u1@example.com")
        assert Session.from_record(session.to_record()) == session


class TestGetSession:
    async def test_unknown_provider(self, store):
        assert await store.get_session("nope") is None

    async def test_fresh_session_returned_as_is(self, store, refresher):
        session = _session(expires_at=NOW + timedelta(minutes=5))
        await store.save(session)
        assert await store.get_session("okta") is session
        assert refresher.calls == 0

    async def test_non_expiring_session(self, store):
        await store.save(_session())
        assert (await store.get_session("okta")).access_token == "tok1"

    async def test_expired_session_is_refreshed(self, store, refresher, vault):
        session = _session(expires_at=NOW - timedelta(seconds=1), refresh_token="r1")
        await store.save(session)

        result = await store.get_session("okta")

        assert result is session
        assert result.access_token == "refreshed-1"
        assert result.expires_at > NOW
        persisted = await vault.get_record(SESSION_PREFIX + "okta")
        assert persisted["access_token"] == "refreshed-1"

    async def test_expired_without_refresh_token(self, store, refresher):
        await store.save(_session(expires_at=NOW - timedelta(seconds=1)))
        assert await store.get_session("okta") is None
        assert refresher.calls == 0
        # Record kept; a new login replaces it.
        assert "okta" in store

    async def test_refresh_failure_returns_none(self, vault):
        refresher = _Refresher(fail=True)
        store = SessionStore(vault, refresher, clock=lambda: NOW)
        await store.save(_session(expires_at=NOW - timedelta(seconds=1), refresh_token="r1"))

        assert await store.get_session("okta") is None
        assert refresher.calls == 1
        assert store.peek("okta").access_token == "tok1"

    async def test_concurrent_callers_refresh_once(self, vault):
        refresher = _Refresher(delay=0.01)
        store = SessionStore(vault, refresher, clock=lambda: NOW)
        await store.save(_session(expires_at=NOW - timedelta(seconds=1), refresh_token="r1"))

        first, second = await asyncio.gather(store.get_session("okta"), store.get_session("okta"))

        assert refresher.calls == 1
        assert first is second
        assert first.access_token == "refreshed-1"

    async def test_refresher_returning_new_object(self, vault):
        async def replace(session: Session) -> Session:
            return _session(
                access_token="brand-new", expires_at=NOW + timedelta(hours=1), refresh_token=None
            )

        store = SessionStore(vault, replace, clock=lambda: NOW)
        original = _session(expires_at=NOW - timedelta(seconds=1), refresh_token="r1")
        await store.save(original)

        result = await store.get_session("okta")

        assert result is original
        assert original.access_token == "brand-new"
        # Providers that do not rotate refresh tokens keep the old one.
        assert original.refresh_token == "r1"


class TestRefreshSession:
    async def test_forced_refresh(self, store, refresher):
        await store.save(_session(expires_at=NOW + timedelta(hours=1), refresh_token="r1"))
        assert await store.refresh_session("okta")
        assert refresher.calls == 1

    async def test_nothing_to_refresh(self, store):
        assert not await store.refresh_session("okta")
        await store.save(_session())
        assert not await store.refresh_session("okta")


class TestPersistence:
    async def test_save_replaces_previous(self, store):
        await store.save(_session(access_token="first"))
        await store.save(_session(access_token="second"))
        assert len(store) == 1
        assert store.peek("okta").access_token == "second"

    async def test_load_from_vault(self, store, vault, refresher):
        await store.save(_session(expires_at=NOW + timedelta(hours=1), email="u1@example.com"))
        await store.save(_session(provider_id="github", subject_id="42"))

        restored = SessionStore(vault, refresher, clock=lambda: NOW)
        assert await restored.load() == 2
        assert sorted(restored.provider_ids()) == ["github", "okta"]
        okta = await restored.get_session("okta")
        assert okta.email == "u1@example.com"
        assert okta.expires_at == NOW + timedelta(hours=1)

    async def test_load_skips_malformed(self, vault, refresher):
        await vault.put_record(SESSION_PREFIX + "broken", {"unexpected": True})
        store = SessionStore(vault, refresher)
        assert await store.load() == 0

    async def test_records_are_encrypted(self, store, vault):
        await store.save(_session(access_token="plain-token"))
        raw = await vault.backend.get(SESSION_PREFIX + "okta")
        assert "plain-token" not in raw


class TestLogout:
    async def test_logout(self, store, vault):
        await store.save(_session())
        assert await store.logout("okta")
        assert await store.get_session("okta") is None
        assert await vault.get_record(SESSION_PREFIX + "okta") is None
        assert not await store.logout("okta")

    async def test_logout_all_includes_persisted(self, store, vault):
        await store.save(_session())
        # Persisted by another instance, never loaded here.
        await vault.put_record(
            SESSION_PREFIX + "github", _session(provider_id="github").to_record()
        )

        assert await store.logout_all() == ["github", "okta"]
        assert len(store) == 0
        assert await vault.backend.keys(SESSION_PREFIX) == []

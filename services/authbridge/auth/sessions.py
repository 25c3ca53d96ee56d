"""Per-provider session store with lazy refresh.

One Session per provider id; a new login overwrites the previous one.
Sessions are held in memory and persisted encrypted through the
credential vault. Refresh is never scheduled: it happens inside
get_session() the first time an expired session is observed.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

from authbridge.auth.errors import AuthBridgeError
from authbridge.logging_config import get_logger
from authbridge.storage.vault import CredentialVault

logger = get_logger(__name__)

SESSION_PREFIX = "session:"


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass
class Session:
    """Latest successful authentication outcome for one provider."""

    provider_id: str
    subject_id: str
    access_token: str = field(repr=False)
    display_name: str | None = None
    email: str | None = None
    refresh_token: str | None = field(default=None, repr=False)
    id_token: str | None = field(default=None, repr=False)
    # None means non-expiring until the provider rejects the token.
    expires_at: datetime | None = None
    raw_claims: dict[str, Any] = field(default_factory=dict)

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utc_now()) >= self.expires_at

    def to_record(self) -> dict[str, Any]:
        record = asdict(self)
        record["expires_at"] = self.expires_at.isoformat() if self.expires_at else None
        return record

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Session":
        data = dict(record)
        expires_at = data.get("expires_at")
        data["expires_at"] = datetime.fromisoformat(expires_at) if expires_at else None
        return cls(**data)


Refresher = Callable[[Session], Awaitable[Session]]


class SessionStore:
    """Keyed-by-provider session table for one bridge instance."""

    def __init__(
        self,
        vault: CredentialVault,
        refresher: Refresher,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._vault = vault
        self._refresher = refresher
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._sessions

    async def load(self) -> int:
        """Read persisted sessions into memory. Returns how many were loaded."""
        records = await self._vault.list_records(SESSION_PREFIX)
        for key, record in records.items():
            try:
                session = Session.from_record(record)
            except (TypeError, ValueError):
                logger.warning("Skipping malformed session record", key=key)
                continue
            self._sessions[session.provider_id] = session
        logger.info("Sessions loaded", count=len(self._sessions))
        return len(self._sessions)

    async def save(self, session: Session) -> None:
        """Store a session, replacing any previous one for the provider."""
        self._sessions[session.provider_id] = session
        await self._vault.put_record(SESSION_PREFIX + session.provider_id, session.to_record())
        logger.info(
            "Session saved",
            provider=session.provider_id,
            expires_at=session.expires_at.isoformat() if session.expires_at else None,
        )

    def peek(self, provider_id: str) -> Session | None:
        """The stored session as-is, expired or not."""
        return self._sessions.get(provider_id)

    def provider_ids(self) -> list[str]:
        return list(self._sessions)

    async def get_session(self, provider_id: str) -> Session | None:
        """Return a usable session, refreshing an expired one first.

        Refresh failure returns None rather than raising: callers treat a
        missing session and a failed refresh the same way, by prompting a
        new login. The stored record is left in place.
        """
        session = self._sessions.get(provider_id)
        if session is None:
            return None
        if not session.is_expired(self._clock()):
            return session
        if not session.refresh_token:
            logger.info("Session expired without refresh token", provider=provider_id)
            return None

        async with self._lock(provider_id):
            # Another caller may have refreshed while we waited.
            session = self._sessions.get(provider_id)
            if session is None:
                return None
            if not session.is_expired(self._clock()):
                return session
            if await self._refresh(session):
                return session
            return None

    async def refresh_session(self, provider_id: str) -> bool:
        """Force a refresh regardless of expiry."""
        session = self._sessions.get(provider_id)
        if session is None or not session.refresh_token:
            return False
        async with self._lock(provider_id):
            return await self._refresh(session)

    async def logout(self, provider_id: str) -> bool:
        """Delete a provider's session unconditionally."""
        removed = self._sessions.pop(provider_id, None) is not None
        deleted = await self._vault.delete(SESSION_PREFIX + provider_id)
        if removed or deleted:
            logger.info("Session removed", provider=provider_id)
        return removed or deleted

    async def logout_all(self) -> list[str]:
        """Delete every session. Returns the provider ids that had one."""
        persisted = await self._vault.backend.keys(SESSION_PREFIX)
        provider_ids = set(self._sessions) | {k[len(SESSION_PREFIX) :] for k in persisted}
        for provider_id in provider_ids:
            await self.logout(provider_id)
        return sorted(provider_ids)

    def _lock(self, provider_id: str) -> asyncio.Lock:
        lock = self._locks.get(provider_id)
        if lock is None:
            lock = self._locks[provider_id] = asyncio.Lock()
        return lock

    async def _refresh(self, session: Session) -> bool:
        try:
            refreshed = await self._refresher(session)
        except AuthBridgeError as e:
            logger.warning("Session refresh failed", provider=session.provider_id, error=str(e))
            return False

        # The refresher may return a new object; keep the one callers hold.
        if refreshed is not session:
            session.access_token = refreshed.access_token
            session.expires_at = refreshed.expires_at
            session.refresh_token = refreshed.refresh_token or session.refresh_token
            session.id_token = refreshed.id_token or session.id_token

        await self.save(session)
        logger.info("Session refreshed", provider=session.provider_id)
        return True

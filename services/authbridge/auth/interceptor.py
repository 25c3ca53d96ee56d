"""Ambient callback interception.

Scrapes codes and tokens out of callbacks the user reaches while browsing
normally, outside any interactive flow: no secondary surface, no PKCE, no
exchange. The scraped value is stored as a StoredToken, one per provider.
Also handles custom-scheme deep links.
"""

import asyncio
import uuid
from collections.abc import AsyncIterable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any
from urllib.parse import parse_qs, urlsplit

from authbridge.auth.classifier import (
    AMBIENT_MATCHERS,
    UNKNOWN_PROVIDER,
    CallbackClassifier,
    ParameterHeuristic,
    extract_callback_params,
)
from authbridge.auth.errors import AuthTimeout
from authbridge.auth.events import AuthEventKind, EventChannel
from authbridge.logging_config import get_logger
from authbridge.storage.vault import CredentialVault

logger = get_logger(__name__)

TOKEN_PREFIX = "ambient:token:"
LOOPBACK_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})
DEFAULT_WAIT_TIMEOUT = 300.0


@dataclass
class StoredToken:
    """A code or token scraped from an ambient callback. Not expiry-tracked."""

    id: str
    provider: str
    access_token: str = field(repr=False)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    state: str | None = None

    def to_record(self) -> dict[str, Any]:
        record = asdict(self)
        record["created_at"] = self.created_at.isoformat()
        return record

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "StoredToken":
        data = dict(record)
        data["created_at"] = datetime.fromisoformat(data["created_at"])
        return cls(**data)


def is_loopback(url: str) -> bool:
    host = (urlsplit(url).hostname or "").lower()
    return host in LOOPBACK_HOSTS or host.startswith("127.")


@dataclass
class _Waiter:
    provider: str
    future: asyncio.Future[StoredToken]
    timer: asyncio.TimerHandle


class AmbientCallbackInterceptor:
    """Ambient token table plus waiters keyed by caller-chosen state."""

    def __init__(
        self,
        vault: CredentialVault,
        classifier: CallbackClassifier | None = None,
        *,
        loopback_only: bool = True,
        wait_timeout: float = DEFAULT_WAIT_TIMEOUT,
        events: EventChannel | None = None,
    ) -> None:
        self._vault = vault
        self._classifier = classifier or CallbackClassifier(AMBIENT_MATCHERS)
        self._loopback_only = loopback_only
        self._wait_timeout = wait_timeout
        self._events = events
        self._tokens: dict[str, StoredToken] = {}
        self._waiters: dict[str, _Waiter] = {}

    @property
    def classifier(self) -> CallbackClassifier:
        return self._classifier

    async def load(self) -> int:
        """Read persisted tokens into memory. Returns how many were loaded."""
        records = await self._vault.list_records(TOKEN_PREFIX)
        for key, record in records.items():
            try:
                token = StoredToken.from_record(record)
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed token record", key=key)
                continue
            self._tokens[token.provider] = token
        return len(self._tokens)

    def is_callback_url(self, url: str) -> bool:
        return self._classifier.classify(url).is_callback

    def identify_provider(self, url: str) -> str:
        return self._classifier.identify_provider(url)

    async def handle_callback(self, url: str) -> StoredToken | None:
        """Store the code or token carried by a callback URL.

        Returns None when the URL carries neither.
        """
        classification = self._classifier.classify(url)
        provider = classification.provider_id
        params = extract_callback_params(url, self._classifier.matcher_for(provider))
        if not params.has_credential:
            logger.warning("No token or code found in callback", provider=provider)
            return None

        token = StoredToken(
            id=str(uuid.uuid4()),
            provider=provider,
            access_token=params.access_token or params.code or "",
            state=params.state,
        )
        await self._store(token)

        if params.state:
            self._resolve_waiter(params.state, token)
        return token

    async def handle_deep_link(self, url: str) -> StoredToken | None:
        """Store the ``code`` carried by a custom-scheme callback URI."""
        parts = urlsplit(url)
        codes = parse_qs(parts.query).get("code")
        if not codes:
            logger.warning("No code in deep link", scheme=parts.scheme)
            return None

        provider = self._classifier.label(url)
        if provider == UNKNOWN_PROVIDER and parts.scheme:
            provider = parts.scheme.lower()

        state = parse_qs(parts.query).get("state", [None])[0]
        token = StoredToken(
            id=str(uuid.uuid4()), provider=provider, access_token=codes[0], state=state
        )
        await self._store(token)
        if state:
            self._resolve_waiter(state, token)
        return token

    async def wait_for_callback(
        self, state: str, provider: str, timeout: float | None = None
    ) -> StoredToken:
        """Wait for an ambient callback carrying ``state``.

        Raises:
            AuthTimeout: no such callback arrived in time.
            ValueError: someone is already waiting on this state.
        """
        if state in self._waiters:
            raise ValueError("Already waiting for a callback with this state")

        loop = asyncio.get_running_loop()
        ttl = self._wait_timeout if timeout is None else timeout
        future: asyncio.Future[StoredToken] = loop.create_future()
        timer = loop.call_later(ttl, self._expire_waiter, state, ttl)
        self._waiters[state] = _Waiter(provider=provider, future=future, timer=timer)
        try:
            return await future
        finally:
            waiter = self._waiters.pop(state, None)
            if waiter is not None:
                waiter.timer.cancel()

    def get_stored_tokens(self) -> list[StoredToken]:
        return list(self._tokens.values())

    def get_token_for_provider(self, provider: str) -> StoredToken | None:
        return self._tokens.get(provider)

    async def remove_token(self, provider: str) -> bool:
        removed = self._tokens.pop(provider, None) is not None
        deleted = await self._vault.delete(TOKEN_PREFIX + provider)
        if removed or deleted:
            logger.info("Ambient token removed", provider=provider)
            self._publish(AuthEventKind.TOKEN_REMOVED, provider)
        return removed or deleted

    async def clear_all_tokens(self) -> int:
        providers = list(self._tokens)
        for provider in providers:
            await self.remove_token(provider)
        return len(providers)

    def get_status(self) -> dict[str, Any]:
        return {
            "active": True,
            "providers": list(self._tokens),
            "token_count": len(self._tokens),
            "waiting": len(self._waiters),
        }

    async def run(self, request_urls: AsyncIterable[str]) -> int:
        """Consume outbound request URLs from the main surface until the stream ends.

        Pattern-tier hits are always handled. Parameter-tier hits are only
        handled for loopback hosts when ``loopback_only`` is set.
        """
        handled = 0
        async for url in request_urls:
            classification = self._classifier.classify(url)
            if not classification.is_callback:
                continue
            if (
                isinstance(classification.match, ParameterHeuristic)
                and self._loopback_only
                and not is_loopback(url)
            ):
                continue
            if await self.handle_callback(url) is not None:
                handled += 1
        return handled

    async def _store(self, token: StoredToken) -> None:
        # One live token per provider.
        self._tokens[token.provider] = token
        await self._vault.put_record(TOKEN_PREFIX + token.provider, token.to_record())
        logger.info("Ambient token stored", provider=token.provider)
        self._publish(AuthEventKind.TOKEN_STORED, token.provider, token_id=token.id)

    def _resolve_waiter(self, state: str, token: StoredToken) -> None:
        waiter = self._waiters.pop(state, None)
        if waiter is None:
            return
        waiter.timer.cancel()
        if not waiter.future.done():
            waiter.future.set_result(token)

    def _expire_waiter(self, state: str, timeout: float) -> None:
        waiter = self._waiters.pop(state, None)
        if waiter is None:
            return
        logger.info("Ambient callback wait timed out", provider=waiter.provider)
        if not waiter.future.done():
            waiter.future.set_exception(AuthTimeout(waiter.provider, timeout))

    def _publish(self, kind: AuthEventKind, provider: str, **detail: Any) -> None:
        if self._events is not None:
            self._events.publish(kind, provider, **detail)

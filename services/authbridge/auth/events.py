"""Status notifications for hosts (settings UI, integration panels).

Subscribers hold an explicit Subscription: an async iterator over their
own queue. Closing it unsubscribes. Publishing never blocks on a slow
subscriber; each queue is unbounded and drained at the subscriber's pace.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from authbridge.logging_config import get_logger

logger = get_logger(__name__)


class AuthEventKind(StrEnum):
    FLOW_STARTED = "flow_started"
    AUTHENTICATED = "authenticated"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    FAILED = "failed"
    SESSION_REFRESHED = "session_refreshed"
    LOGGED_OUT = "logged_out"
    TOKEN_STORED = "token_stored"
    TOKEN_REMOVED = "token_removed"


@dataclass(frozen=True)
class AuthEvent:
    kind: AuthEventKind
    provider_id: str
    detail: dict[str, Any] = field(default_factory=dict)
    at: datetime = field(default_factory=lambda: datetime.now(UTC))


class Subscription:
    """One subscriber's view of the event channel."""

    _SENTINEL = object()

    def __init__(self, channel: "EventChannel") -> None:
        self._channel = channel
        self._queue: asyncio.Queue[AuthEvent | object] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _deliver(self, event: AuthEvent) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    def close(self) -> None:
        """Unsubscribe. Pending iteration ends after queued events drain."""
        if self._closed:
            return
        self._closed = True
        self._channel._unsubscribe(self)
        self._queue.put_nowait(self._SENTINEL)

    async def get(self) -> AuthEvent:
        """Wait for the next event. Raises StopAsyncIteration once closed and drained."""
        item = await self._queue.get()
        if item is self._SENTINEL:
            raise StopAsyncIteration
        return item  # type: ignore[return-value]

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> AuthEvent:
        return await self.get()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class EventChannel:
    """Fan-out of AuthEvents to explicit subscribers."""

    def __init__(self) -> None:
        self._subscribers: list[Subscription] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscription:
        subscription = Subscription(self)
        self._subscribers.append(subscription)
        return subscription

    def publish(self, kind: AuthEventKind, provider_id: str, **detail: Any) -> AuthEvent:
        event = AuthEvent(kind=kind, provider_id=provider_id, detail=detail)
        for subscription in list(self._subscribers):
            subscription._deliver(event)
        logger.debug("Auth event published", kind=kind.value, provider=provider_id)
        return event

    def close(self) -> None:
        for subscription in list(self._subscribers):
            subscription.close()

    def _unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

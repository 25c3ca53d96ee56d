"""In-flight authentication table keyed by the IdP-facing state value.

Each flow owns exactly one entry, created by begin() and released by its
first terminal transition: resolve, reject, cancel, or deadline expiry.
Lookups are by exact state only. A state that is unknown, expired, or
already consumed is a no-op, so replayed or forged callbacks cannot
re-trigger side effects.
"""

import asyncio
import secrets
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from authbridge.auth.errors import AuthTimeout, StateMismatch
from authbridge.logging_config import get_logger

logger = get_logger(__name__)

PENDING_AUTH_TTL = 300.0  # 5 minutes


class FlowState(StrEnum):
    IDLE = "idle"
    AWAITING_CALLBACK = "awaiting_callback"
    EXCHANGING = "exchanging"
    AUTHENTICATED = "authenticated"
    EXCHANGE_FAILED = "exchange_failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


TERMINAL_STATES = frozenset(
    {
        FlowState.AUTHENTICATED,
        FlowState.EXCHANGE_FAILED,
        FlowState.CANCELLED,
        FlowState.TIMED_OUT,
    }
)


def generate_state() -> str:
    """Generate a cryptographically random state parameter."""
    return secrets.token_urlsafe(32)


@dataclass(eq=False)
class PendingAuthentication:
    """One interactive flow waiting for its callback. Never persisted."""

    provider_id: str
    state: str
    timeout: float
    future: asyncio.Future[Any] = field(repr=False)
    pkce_verifier: str | None = field(default=None, repr=False)
    nonce: str | None = field(default=None, repr=False)
    status: FlowState = FlowState.IDLE
    _timer: asyncio.TimerHandle | None = field(default=None, repr=False)

    @property
    def done(self) -> bool:
        return self.future.done()

    @property
    def finished(self) -> bool:
        return self.status in TERMINAL_STATES

    def __await__(self):
        return self.future.__await__()


class PendingAuthCorrelator:
    """Owns the pending-authentication table for one bridge instance."""

    def __init__(self, default_timeout: float = PENDING_AUTH_TTL) -> None:
        self._default_timeout = default_timeout
        self._pending: dict[str, PendingAuthentication] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, state: object) -> bool:
        return state in self._pending

    def get(self, state: str) -> PendingAuthentication | None:
        return self._pending.get(state)

    def begin(
        self,
        provider_id: str,
        *,
        pkce_verifier: str | None = None,
        nonce: str | None = None,
        timeout: float | None = None,
    ) -> PendingAuthentication:
        """Start tracking a flow. Must be called from a running event loop."""
        loop = asyncio.get_running_loop()
        ttl = self._default_timeout if timeout is None else timeout

        state = generate_state()
        while state in self._pending:
            state = generate_state()

        pending = PendingAuthentication(
            provider_id=provider_id,
            state=state,
            timeout=ttl,
            future=loop.create_future(),
            pkce_verifier=pkce_verifier,
            nonce=nonce,
        )
        pending._timer = loop.call_later(ttl, self._expire, state)
        pending.status = FlowState.AWAITING_CALLBACK
        self._pending[state] = pending
        logger.debug("Pending authentication started", provider=provider_id, timeout=ttl)
        return pending

    def claim(self, state: str | None) -> PendingAuthentication | None:
        """Move an awaiting flow into exchange. The deadline stops applying.

        Returns None for unknown or already-claimed states.
        """
        try:
            pending = self._claimable(state)
        except StateMismatch as e:
            logger.warning("State mismatch: callback dropped", reason=e.reason)
            return None

        pending.status = FlowState.EXCHANGING
        self._stop_timer(pending)
        return pending

    def _claimable(self, state: str | None) -> PendingAuthentication:
        if not state:
            raise StateMismatch("missing")
        pending = self._pending.get(state)
        if pending is None:
            raise StateMismatch("unknown")
        if pending.status is not FlowState.AWAITING_CALLBACK:
            raise StateMismatch("already_claimed")
        return pending

    def resolve(self, state: str, outcome: Any) -> bool:
        """Complete a flow with an outcome. No-op for unknown states."""
        status = FlowState.AUTHENTICATED if outcome is not None else FlowState.CANCELLED
        pending = self._release(state, status)
        if pending is None:
            return False
        pending.future.set_result(outcome)
        return True

    def reject(self, state: str, exc: BaseException) -> bool:
        """Fail a flow. No-op for unknown states."""
        pending = self._release(state, FlowState.EXCHANGE_FAILED)
        if pending is None:
            return False
        pending.future.set_exception(exc)
        return True

    def cancel(self, state: str) -> bool:
        """User abandoned the flow: resolves with None rather than failing."""
        return self.resolve(state, None)

    def clear(self) -> None:
        """Cancel every outstanding flow (bridge shutdown)."""
        for state in list(self._pending):
            self.cancel(state)

    def _release(self, state: str, status: FlowState) -> PendingAuthentication | None:
        pending = self._pending.pop(state, None)
        if pending is None:
            logger.debug("Resolution ignored for unknown state")
            return None
        self._stop_timer(pending)
        pending.status = status
        if pending.future.done():
            # The awaiting task was cancelled; nothing left to deliver.
            return None
        logger.debug("Pending authentication released", provider=pending.provider_id, status=status)
        return pending

    def _expire(self, state: str) -> None:
        pending = self._pending.pop(state, None)
        if pending is None:
            return
        pending._timer = None
        pending.status = FlowState.TIMED_OUT
        logger.info("Pending authentication timed out", provider=pending.provider_id)
        if not pending.future.done():
            pending.future.set_exception(AuthTimeout(pending.provider_id, pending.timeout))

    @staticmethod
    def _stop_timer(pending: PendingAuthentication) -> None:
        if pending._timer is not None:
            pending._timer.cancel()
            pending._timer = None

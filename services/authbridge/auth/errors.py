"""Error taxonomy for authentication flows.

Only ProtocolError and AuthTimeout ever reach callers of AuthBridge.
StateMismatch is recovered inside the correlator and only shows up in the
audit log. A URL no provider claims is not an error either: classification
returns NoMatch. User cancellation resolves the flow with None.
"""


class AuthBridgeError(Exception):
    """Base exception for authbridge."""


class StateMismatch(AuthBridgeError):
    """A callback carried an unknown, expired, or already-consumed state."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Callback state rejected: {reason}")


class ProtocolError(AuthBridgeError):
    """The identity provider reported an error during exchange or refresh.

    The provider's error code and description are carried verbatim.
    """

    def __init__(self, error: str, description: str | None = None) -> None:
        self.error = error
        self.description = description
        message = f"{error}: {description}" if description else error
        super().__init__(message)


class AuthTimeout(AuthBridgeError):
    """No callback was observed before the flow's deadline."""

    def __init__(self, provider_id: str, timeout: float) -> None:
        self.provider_id = provider_id
        self.timeout = timeout
        super().__init__(f"No callback from {provider_id} within {timeout:g}s")

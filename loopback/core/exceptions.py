"""
Domain exceptions for the loopback authorization flow.

Every terminal failure of a flow is one of these. They are raised to the
caller of the flow's wait operation; the browser never sees them.
"""


class LoopbackOAuthError(Exception):
    """Base exception for all loopback flow errors."""

    pass


class ConfigError(LoopbackOAuthError, ValueError):
    """
    Raised when required exchange configuration is missing.

    Fails fast at construction time, before any listener is started.
    """

    pass


class BindError(LoopbackOAuthError):
    """Raised when the listener cannot acquire the requested host:port."""

    pass


class StateMismatchError(LoopbackOAuthError):
    """
    Raised when the redirect carries an unexpected state value.

    Signals a possible CSRF attempt or a stale browser tab. Never retried.
    """

    def __init__(self, expected: str, received: str | None):
        self.expected = expected
        self.received = received
        super().__init__(f"state mismatch: expected {expected!r}, got {received!r}")


class ExchangeError(LoopbackOAuthError):
    """Raised when the code-for-token exchange fails or the provider returned an error."""

    pass


class ShutdownError(LoopbackOAuthError):
    """
    Raised when the listener did not stop cleanly within its deadline.

    The listener has been force-closed by the time this is raised.
    """

    pass


class ListenerError(LoopbackOAuthError):
    """Raised when the listener exits on its own before the flow finished."""

    pass


class FlowCanceledError(LoopbackOAuthError):
    """Raised when the caller's cancellation signal fired before completion."""

    pass


class FlowError(LoopbackOAuthError):
    """Raised when a flow is used incorrectly (e.g. started twice)."""

    pass

"""Typed exception hierarchy for broker errors.

Provides structured exceptions for differentiated error handling
(configuration faults vs expired sessions vs rate limits vs bad payloads).
"""


class BrokerError(Exception):
    """Base exception for all broker-related errors.

    Carries the broker name so callers can identify which integration failed.
    """

    def __init__(self, message: str, broker_name: str = ""):
        self.broker_name = broker_name
        super().__init__(message)


class BrokerConfigError(BrokerError):
    """API key or secret not configured. Not retriable without operator action."""

    pass


class BrokerAuthError(BrokerError):
    """Session missing, expired, or rejected by the broker (HTTP 401/403).

    The user has to log in to the broker again.
    """

    pass


class BrokerConnectionError(BrokerError):
    """Network failures: timeouts, DNS resolution, connection refused.

    Retriable by default.
    """

    def __init__(self, message: str, broker_name: str = "", retriable: bool = True):
        self.retriable = retriable
        super().__init__(message, broker_name)


class BrokerAPIError(BrokerError):
    """HTTP 4xx/5xx responses from the broker API."""

    def __init__(
        self,
        message: str,
        broker_name: str = "",
        status_code: int | None = None,
    ):
        self.status_code = status_code
        super().__init__(message, broker_name)

    @property
    def retriable(self) -> bool:
        """429 (rate limit) and 5xx errors are generally retriable."""
        if self.status_code is None:
            return False
        return self.status_code == 429 or self.status_code >= 500


class BrokerRateLimitError(BrokerAPIError):
    """HTTP 429 from the broker."""

    def __init__(self, message: str, broker_name: str = ""):
        super().__init__(message, broker_name, status_code=429)


class BrokerDataError(BrokerError):
    """Malformed or unparseable response from the broker."""

    pass

from typing import List, Optional


class BrokerException(Exception):
    """Base exception for all broker session errors."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ConfigurationError(BrokerException):
    """Missing credentials or invalid settings. Fatal, never retried."""
    pass


class AuthenticationError(BrokerException):
    """The login exchange was rejected or could not be completed."""
    pass


class TransientSessionError(BrokerException):
    """Retryable: session expired, unauthorized mid-operation, or a server hiccup."""
    pass


class SessionExpiredError(TransientSessionError):
    """The platform answered with an authorization-denied response."""
    pass


class TransportError(TransientSessionError):
    """DNS, connect or timeout failure below the HTTP status level."""
    pass


class PermanentBusinessError(BrokerException):
    """Non-Retryable rejection of a well-formed request."""
    pass


class OrderRejectedError(PermanentBusinessError):
    """Platform-reported validation errors on an order (insufficient funds, market closed)."""

    def __init__(self, reason: str, errors: Optional[List[str]] = None):
        super().__init__(reason)
        self.errors = errors or []

    @classmethod
    def from_messages(cls, errors: List[str], fallback: str) -> "OrderRejectedError":
        """'Trade error: a, b' from the platform's messages, or the fallback when there are none."""
        errors = [e.strip() for e in errors if e and e.strip()]
        if errors:
            return cls("Trade error: " + ", ".join(errors), errors)
        return cls("Trade error: " + fallback)


class ResponseParseError(PermanentBusinessError):
    """The expected table or JSON structure is absent from the response."""
    pass


class UnsupportedOperationError(PermanentBusinessError):
    """The selected backend does not provide this operation."""
    pass


class ExhaustedRetriesError(BrokerException):
    """The attempt budget reached zero with only transient failures observed."""

    def __init__(self, last_reason: str, attempts: int):
        super().__init__(f"Gave up after {attempts} attempt(s): {last_reason}")
        self.last_reason = last_reason
        self.attempts = attempts

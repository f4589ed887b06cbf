"""Custom exception hierarchy for handoff.

All application-specific exceptions inherit from HandoffError,
which carries an error code for HTTP error body mapping.
"""

from __future__ import annotations


class HandoffError(Exception):
    """Base exception for all handoff errors."""

    def __init__(self, message: str, *, code: str = "INTERNAL_ERROR") -> None:
        super().__init__(message)
        self.code = code


class ConfigurationError(HandoffError):
    """Missing or invalid configuration. Raised before any store write."""

    def __init__(self, message: str, *, code: str = "CONFIG_ERROR") -> None:
        super().__init__(message, code=code)


class InputError(HandoffError):
    """Malformed or missing invocation payload. Raised before any store write."""

    def __init__(self, message: str, *, code: str = "INPUT_ERROR") -> None:
        super().__init__(message, code=code)


class BackgroundTokenError(HandoffError):
    """Misuse of a background execution token (e.g. re-acquire after release)."""

    def __init__(self, message: str, *, code: str = "TOKEN_ERROR") -> None:
        super().__init__(message, code=code)


class StatusTransitionError(HandoffError):
    """Illegal status surface transition."""

    def __init__(self, message: str, *, code: str = "STATUS_ERROR") -> None:
        super().__init__(message, code=code)


class DeliveryError(HandoffError):
    """Terminal outcomes handled inside the background delivery task."""

    def __init__(self, message: str, *, code: str = "DELIVERY_ERROR") -> None:
        super().__init__(message, code=code)


class TransportError(DeliveryError):
    """Errors from the streaming network operation."""

    def __init__(self, message: str, *, code: str = "TRANSPORT_ERROR") -> None:
        super().__init__(message, code=code)


class TransportCancelled(TransportError):
    """Stream cancelled underneath us, typically by the host reclaiming budget."""

    def __init__(self, message: str = "Transport cancelled") -> None:
        super().__init__(message, code="TRANSPORT_CANCELLED")


class TransportFailure(TransportError):
    """Generic network / protocol failure."""

    def __init__(self, message: str, *, code: str = "TRANSPORT_FAILURE") -> None:
        super().__init__(message, code=code)


class DeliveryTimeout(DeliveryError):
    """No terminal signal within the deadline."""

    def __init__(self, message: str = "Delivery timed out") -> None:
        super().__init__(message, code="DELIVERY_TIMEOUT")

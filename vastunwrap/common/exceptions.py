"""
Custom exceptions for vastunwrap.

Every failure carries a ``reason`` kind (used for per-bid annotations and
metrics labels) and the HTTP ``status_code`` the proxy answers with.
"""

from typing import Any


class UnwrapError(Exception):
    """Base exception for vastunwrap."""

    reason = "error"
    status_code = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(UnwrapError):
    """Rejected before any network call: bad scheme, credentials, allowlist, bad input."""

    reason = "validation"
    status_code = 400

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message, details)
        if status_code is not None:
            self.status_code = status_code


class SecurityError(UnwrapError):
    """Destination resolves to a forbidden address, or is an IP literal."""

    reason = "security"
    status_code = 403


class NetworkError(UnwrapError):
    """DNS failure, connection failure or unusable upstream status."""

    reason = "network"
    status_code = 502


class UnwrapTimeoutError(UnwrapError):
    """Fetch deadline elapsed."""

    reason = "timeout"
    status_code = 504


class PayloadTooLargeError(UnwrapError):
    """Response body exceeded the configured ceiling."""

    reason = "payload_too_large"
    status_code = 502


class ProtocolError(UnwrapError):
    """Malformed redirect or VAST document."""

    reason = "protocol"
    status_code = 502


class TooManyRedirectsError(ProtocolError):
    """Redirect ceiling exceeded."""

    reason = "too_many_redirects"


class DepthExceededError(ProtocolError):
    """Wrapper chain reached the depth limit without an InLine ad."""

    reason = "depth_exceeded"

from __future__ import annotations

from typing import Optional


class AuthError(Exception):
    """Base class for failures surfaced by the session manager.

    Each subclass carries a stable ``error_code`` so callers can branch on
    the kind of failure without matching message text:
    - transport_failure (no well-formed response)
    - unauthorized (401 from the authority)
    - second_factor_required
    - validation_error (per-field rejection)
    - server_error (non-JSON response where JSON was required)
    - request_failed (any other rejection)
    - session_terminated
    """

    status_code: Optional[int] = None
    error_code: str = "request_failed"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[str] = None,
        field_errors: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail
        self.field_errors = field_errors or {}


class TransportFailure(AuthError):
    """The request did not receive a well-formed response."""
    error_code = "transport_failure"


class AuthenticationRejected(AuthError):
    """The authority answered 401."""
    status_code = 401
    error_code = "unauthorized"


class SecondFactorRequired(AuthError):
    """Password was accepted but a TOTP or backup code is needed."""
    status_code = 401
    error_code = "second_factor_required"

    def __init__(self, message: str = "2FA_REQUIRED", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ValidationFailure(AuthError):
    """The request was rejected with per-field errors (or failed local checks)."""
    status_code = 400
    error_code = "validation_error"


class ServerError(AuthError):
    """The authority answered with something other than JSON."""
    error_code = "server_error"


class RequestRejected(AuthError):
    """Any other non-2xx answer; ``message`` is the authority's ``error`` text."""
    error_code = "request_failed"


class SessionTerminated(AuthError):
    """The session ended by logout or authority-confirmed invalidation."""
    status_code = 401
    error_code = "session_terminated"


__all__ = [
    "AuthError",
    "TransportFailure",
    "AuthenticationRejected",
    "SecondFactorRequired",
    "ValidationFailure",
    "ServerError",
    "RequestRejected",
    "SessionTerminated",
]

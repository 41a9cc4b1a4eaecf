"""Error taxonomy shared by the vault, provider clients, and the HTTP API.

Every error carries a stable ``code`` and the HTTP ``status_code`` the API
layer renders it with.  Messages are sanitized at construction time so that
token material or raw provider bodies never reach a client or a log line.

Status code mapping:
- ``ValidationError``      → 400
- ``AuthExpired``          → 401 (user must reconnect)
- ``Unauthorized``         → 401 (provider rejected the bearer token)
- ``NotFound``             → 404
- ``ProviderRateLimited``  → 429 (``retry_after`` surfaced as a header)
- ``InternalError``        → 500
- ``ProviderUnavailable``  → 503
"""

from __future__ import annotations

import re

_MAX_MESSAGE_LENGTH = 200

_CREDENTIAL_KEYS = r"client_secret|refresh_token|access_token|id_token|token|code"


def redact_credentials(message: str) -> str:
    """Redact credential-looking values from *message*.

    Covers ``key=value``, ``key: value``, JSON-style quoted values and
    ``Bearer`` headers.
    """
    redacted = re.sub(
        rf"(?i)\b({_CREDENTIAL_KEYS})\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(
        rf"""(?i)(['"]?(?:{_CREDENTIAL_KEYS})['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    redacted = re.sub(
        rf"(?i)\b({_CREDENTIAL_KEYS})\s*:\s*([^\s,;\"']+)",
        r"\1: [REDACTED]",
        redacted,
    )
    redacted = re.sub(r"(?i)\bbearer\s+[A-Za-z0-9._~+/=-]+", "Bearer [REDACTED]", redacted)
    return redacted


def sanitize_message(message: str) -> str:
    """Redact credentials, collapse whitespace and cap the length."""
    return " ".join(redact_credentials(message).split())[:_MAX_MESSAGE_LENGTH]


class CalbridgeError(Exception):
    """Base class for all typed errors raised by calbridge."""

    code = "INTERNAL_ERROR"
    status_code = 500
    default_message = "Internal error"

    def __init__(self, message: str | None = None) -> None:
        self.message = sanitize_message(message or self.default_message)
        super().__init__(self.message)


class ValidationError(CalbridgeError):
    """Request shape or value is invalid."""

    code = "VALIDATION_ERROR"
    status_code = 400
    default_message = "Invalid request"


class AuthExpired(CalbridgeError):
    """The stored credential is gone or can no longer be refreshed."""

    code = "AUTH_EXPIRED"
    status_code = 401
    default_message = "Calendar connection expired. Please reconnect your account."


class Unauthorized(CalbridgeError):
    """The provider rejected the bearer token for a single request."""

    code = "UNAUTHORIZED"
    status_code = 401
    default_message = "The calendar provider rejected the access token"


class NotFound(CalbridgeError):
    """A calendar, event, or integration does not exist."""

    code = "NOT_FOUND"
    status_code = 404
    default_message = "Resource not found"


class ProviderRateLimited(CalbridgeError):
    """The provider throttled the request."""

    code = "RATE_LIMITED"
    status_code = 429
    default_message = "The calendar provider is rate limiting requests"

    def __init__(self, message: str | None = None, *, retry_after: float | None = None) -> None:
        self.retry_after = retry_after
        super().__init__(message)


class ProviderUnavailable(CalbridgeError):
    """The provider returned a 5xx, timed out, or could not be reached."""

    code = "PROVIDER_UNAVAILABLE"
    status_code = 503
    default_message = "The calendar provider is temporarily unavailable. Please try again."


class InternalError(CalbridgeError):
    """Unexpected failure; the message is never shown to clients verbatim."""


class InvalidGrant(AuthExpired):
    """The refresh token was rejected by the token endpoint (``invalid_grant``)."""

    code = "AUTH_EXPIRED"
    default_message = "Refresh token is invalid or revoked. Please reconnect your account."

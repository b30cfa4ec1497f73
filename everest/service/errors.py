from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code``, a stable ``error_code`` that
    clients branch on, and a ``default_message`` used when no message is
    given. Authentication failures share deliberately vague messages so
    responses do not reveal which check failed.
    """

    status_code: int = 400
    error_code: str = "VALIDATION_ERROR"
    default_message: str = "Invalid request"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "VALIDATION_ERROR"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "UNAUTHORIZED"
    default_message = "Authentication failed"


class NoTokenError(AuthenticationError):
    error_code = "NO_TOKEN"
    default_message = "Authentication required"


class MalformedTokenError(AuthenticationError):
    """Token is structurally unusable; treated as a bad request."""
    status_code = 400
    error_code = "INVALID_TOKEN"
    default_message = "Malformed authentication token"


class InvalidSignatureError(AuthenticationError):
    error_code = "INVALID_TOKEN"
    default_message = "Invalid credentials"


class TokenExpiredError(AuthenticationError):
    """Token expired; ``claims`` holds the verified payload when available."""
    error_code = "TOKEN_EXPIRED"
    default_message = "Session expired - please login again"

    def __init__(self, message: Optional[str] = None, *, claims=None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.claims = claims


class TokenNotYetValidError(AuthenticationError):
    error_code = "TOKEN_INACTIVE"
    default_message = "Token not yet valid"


class SessionTimeoutError(AuthenticationError):
    error_code = "SESSION_TIMEOUT"
    default_message = "Session expired due to inactivity"


class RevokedTokenError(AuthenticationError):
    error_code = "REVOKED_TOKEN"
    default_message = "Session terminated"


class MissingRefreshTokenError(AuthenticationError):
    error_code = "MISSING_REFRESH_TOKEN"
    default_message = "Refresh token required"


class InvalidRefreshTokenError(AuthenticationError):
    error_code = "INVALID_REFRESH_TOKEN"
    default_message = "Invalid refresh token"


class ClientMismatchError(AuthenticationError):
    """Token presented from a client other than the one it was issued to."""
    error_code = "SESSION_HIJACK"
    default_message = "Suspicious activity detected"


class SessionRevokedError(AuthenticationError):
    error_code = "SESSION_REVOKED"
    default_message = "Session invalidated by new login"


class InvalidCredentialsError(AuthenticationError):
    error_code = "INVALID_CREDENTIALS"
    default_message = "Invalid credentials"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "FORBIDDEN"
    default_message = "Insufficient permissions for this operation"


class UserInactiveError(ForbiddenError):
    error_code = "USER_INACTIVE"
    default_message = "Account deactivated"


class DeviceBlockedError(ForbiddenError):
    error_code = "DEVICE_BLOCKED"
    default_message = "Your device is blocked from sending messages"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "NOT_FOUND"
    default_message = "Resource not found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "CONFLICT"
    default_message = "Resource already exists"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "SERVER_ERROR"
    default_message = "Internal server error"


class ConfigurationError(ServerError):
    """Auth subsystem misconfigured, e.g. a signing secret is missing."""
    error_code = "AUTH_ERROR"
    default_message = "Authentication system error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "NoTokenError",
    "MalformedTokenError",
    "InvalidSignatureError",
    "TokenExpiredError",
    "TokenNotYetValidError",
    "SessionTimeoutError",
    "RevokedTokenError",
    "MissingRefreshTokenError",
    "InvalidRefreshTokenError",
    "ClientMismatchError",
    "SessionRevokedError",
    "InvalidCredentialsError",
    "ForbiddenError",
    "UserInactiveError",
    "DeviceBlockedError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "ConfigurationError",
]

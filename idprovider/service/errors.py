from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
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
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


# Orchestration-layer failures. These never cross the HTTP boundary as-is;
# AuthService folds them into AuthenticationFailed.
class TenantNotFoundError(AuthenticationError):
    error_code = "tenant_not_found"


class UserNotFoundError(AuthenticationError):
    error_code = "user_not_found"


class UserInactiveError(AuthenticationError):
    error_code = "user_inactive"


class InvalidCredentialsError(AuthenticationError):
    error_code = "invalid_credentials"


# Token validation failures, collapsed to a boolean by TokenService.validate.
class TokenError(AuthenticationError):
    error_code = "invalid_token"


class TokenMalformedError(TokenError):
    error_code = "token_malformed"


class TokenUnsupportedAlgorithmError(TokenMalformedError):
    error_code = "token_unsupported_algorithm"


class TokenSignatureError(TokenMalformedError):
    error_code = "token_signature_invalid"


class TokenExpiredError(TokenError):
    error_code = "token_expired"


class TokenBlacklistedError(TokenError):
    error_code = "token_blacklisted"


class TokenTenantMismatchError(TokenError):
    error_code = "token_tenant_mismatch"


class TokenSubjectMismatchError(TokenError):
    error_code = "token_subject_mismatch"


class RoleNotFoundError(ValidationError):
    error_code = "role_not_found"


class AuthenticationFailed(AuthenticationError):
    """The only failure an unauthenticated caller ever sees.

    ``reason`` holds the internal kind for logs and tests; it is never put in
    a response body.
    """

    def __init__(self, reason: str = "unknown") -> None:
        super().__init__("authentication failed")
        self.reason = reason


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "TenantNotFoundError",
    "UserNotFoundError",
    "UserInactiveError",
    "InvalidCredentialsError",
    "TokenError",
    "TokenMalformedError",
    "TokenUnsupportedAlgorithmError",
    "TokenSignatureError",
    "TokenExpiredError",
    "TokenBlacklistedError",
    "TokenTenantMismatchError",
    "TokenSubjectMismatchError",
    "RoleNotFoundError",
    "AuthenticationFailed",
]

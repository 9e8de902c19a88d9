from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each class carries an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - unavailable (503)
    - server_error (500)

    ``headers`` are copied onto the error response (e.g. ``WWW-Authenticate``).
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
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.headers = headers or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class BadRequestError(ValidationError):
    """Request is malformed or missing required fields."""
    pass


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class MalformedToken(AuthenticationError):
    """Token is not a structurally valid JWT or lacks required claims."""
    pass


class SignatureInvalid(AuthenticationError):
    """Token signature does not verify under the gateway secret."""
    pass


class TokenExpired(AuthenticationError):
    pass


class SessionInvalidated(AuthenticationError):
    """No live login session matches the token's notBefore."""
    pass


class Unauthenticated(AuthenticationError):
    """Refresh or revoke rejected; carries the bearer challenge to send back."""
    pass


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class TenantAccessForbidden(ForbiddenError):
    """Client asked for the root tenant while that is disabled."""
    pass


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class TenantNotFound(ValidationError):
    pass


class ProviderUnknown(ValidationError):
    pass


class CredentialExchangeFailed(ValidationError):
    """The identity provider rejected or could not evaluate the credential."""
    pass


class AccountNotFound(CredentialExchangeFailed):
    """No principal exists and auto-registration is not allowed."""
    pass


class AccountInactive(ValidationError):
    pass


class ConflictError(ServiceError):
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "MalformedToken",
    "SignatureInvalid",
    "TokenExpired",
    "SessionInvalidated",
    "Unauthenticated",
    "ForbiddenError",
    "TenantAccessForbidden",
    "NotFoundError",
    "TenantNotFound",
    "ProviderUnknown",
    "CredentialExchangeFailed",
    "AccountNotFound",
    "AccountInactive",
    "ConflictError",
    "ServerError",
]

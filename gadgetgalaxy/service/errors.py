from __future__ import annotations

from typing import List, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``.
    ``detail`` holds extra top-level fields merged into the error body
    (``requiresVerification``, ``isNewUser``); it must never carry secrets.
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
    """Malformed or missing input (400)."""

    status_code = 400
    error_code = "validation_error"

    def __init__(
        self,
        message: str = "Validation Error",
        *,
        errors: Optional[List[dict]] = None,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.errors = errors or []

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationError":
        return cls(errors=[{"field": field, "message": message}])


class DuplicateKey(ServiceError):
    """A unique field (email, federated id) is already taken (400)."""

    status_code = 400
    error_code = "duplicate_key"


class Unauthenticated(ServiceError):
    """Missing, invalid or expired credentials (401)."""

    status_code = 401
    error_code = "unauthenticated"


class AccountLocked(Unauthenticated):
    """Too many failed logins; surfaced as 401 like bad credentials."""

    error_code = "account_locked"


class Forbidden(ServiceError):
    """Authenticated but not allowed: inactive, unverified or wrong role (403)."""

    status_code = 403
    error_code = "forbidden"

    def __init__(
        self,
        message: str,
        *,
        reason: str,
        requires_verification: bool = False,
        **kwargs,
    ) -> None:
        detail = kwargs.pop("detail", None) or {}
        if reason in ("inactive", "unverified"):
            detail.setdefault("requiresVerification", requires_verification)
        super().__init__(message, detail=detail, **kwargs)
        self.reason = reason
        self.requires_verification = requires_verification


class InvalidOrExpiredToken(ServiceError):
    """Verification or reset token unknown, used or past expiry (400)."""

    status_code = 400
    error_code = "invalid_or_expired_token"


class InvalidAssertion(ServiceError):
    """Federated identity assertion failed validation (401)."""

    status_code = 401
    error_code = "invalid_assertion"


class EmailNotVerified(ServiceError):
    """Identity provider reports the email as unverified (400)."""

    status_code = 400
    error_code = "email_not_verified"


class AccountNotFound(ServiceError):
    """Federated login for an email with no local account (404)."""

    status_code = 404
    error_code = "account_not_found"

    def __init__(self, message: str = "Account not found. Please register first.", **kwargs) -> None:
        super().__init__(message, detail={"isNewUser": True}, **kwargs)


class AccountAlreadyExists(ServiceError):
    """Federated registration for an email that already has an account (400)."""

    status_code = 400
    error_code = "account_already_exists"

    def __init__(
        self, message: str = "Account already exists. Please login instead.", **kwargs
    ) -> None:
        super().__init__(message, detail={"isNewUser": False}, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""

    status_code = 404
    error_code = "not_found"


class RateLimited(ServiceError):
    """Rate limit exceeded (429)."""

    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str = "Too many requests, please try again later", *, retry_after: int = 0, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class UpstreamUnavailable(ServiceError):
    """Email, image host or identity provider failed (502)."""

    status_code = 502
    error_code = "upstream_unavailable"


class InternalError(ServiceError):
    """Unclassified server error (500)."""

    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "DuplicateKey",
    "Unauthenticated",
    "AccountLocked",
    "Forbidden",
    "InvalidOrExpiredToken",
    "InvalidAssertion",
    "EmailNotVerified",
    "AccountNotFound",
    "AccountAlreadyExists",
    "NotFoundError",
    "RateLimited",
    "UpstreamUnavailable",
    "InternalError",
]

from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """An auth flow refused the request.

    ``message`` is shown to the caller verbatim, so it must never reveal
    whether an account exists. The HTTP layer answers with ``status_code``
    and ``{"success": false, "message": ..., "code": error_code}``.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(self, message: str, *, retry_after: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.retry_after = retry_after

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


class ValidationError(ServiceError):
    """Malformed or rule-breaking request body."""


class InvalidCredentialsError(ServiceError):
    error_code = "invalid_credentials"


class AccountStateError(ServiceError):
    """Password matched but the account is deactivated or unverified."""
    error_code = "account_state"


class TokenInvalidError(ServiceError):
    """Verification or reset token unusable, for whatever reason."""
    error_code = "invalid_token"


class ConflictError(ServiceError):
    """Email or username already held by a live account."""
    error_code = "conflict"


class AuthenticationError(ServiceError):
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"


class RateLimitedError(ServiceError):
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: Optional[int] = None) -> None:
        super().__init__(message, retry_after=max(0, int(retry_after or 0)))


class ServerError(ServiceError):
    """Unexpected failure; callers only ever see the flow's generic message."""
    status_code = 500
    error_code = "server_error"

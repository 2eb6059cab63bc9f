from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional, Protocol

from hikariauth.logging import get_logger
from hikariauth.service.errors import ServerError, ServiceError
from hikariauth.storage.models import (
    AuditEntry,
    AuditSummaryRow,
    FailedAttemptGroup,
    SecurityEvent,
    Snapshot,
    utcnow,
)

logger = get_logger(__name__)

# Audit action names
EMAIL_VERIFICATION_ATTEMPT = "email_verification_attempt"
EMAIL_VERIFIED = "email_verified"
RESEND_VERIFICATION_ATTEMPT = "resend_verification_attempt"
VERIFICATION_EMAIL_RESENT = "verification_email_resent"
SIGNUP_ATTEMPT = "signup_attempt"
USER_CREATED = "user_created"
LOGIN_FAILED = "login_failed"
LOGIN_SUCCESS = "login_success"
LOGOUT_SUCCESS = "logout_success"
LOGOUT_FAILED = "logout_failed"
PASSWORD_RESET_ATTEMPT = "password_reset_attempt"
PASSWORD_RESET_REQUESTED = "password_reset_requested"
PASSWORD_RESET_SUCCESS = "password_reset_success"

AUDIT_ACTIONS = frozenset(
    {
        EMAIL_VERIFICATION_ATTEMPT,
        EMAIL_VERIFIED,
        RESEND_VERIFICATION_ATTEMPT,
        VERIFICATION_EMAIL_RESENT,
        SIGNUP_ATTEMPT,
        USER_CREATED,
        LOGIN_FAILED,
        LOGIN_SUCCESS,
        LOGOUT_SUCCESS,
        LOGOUT_FAILED,
        PASSWORD_RESET_ATTEMPT,
        PASSWORD_RESET_REQUESTED,
        PASSWORD_RESET_SUCCESS,
    }
)

# Failure actions reported per IP
FAILED_ATTEMPT_ACTIONS = (
    EMAIL_VERIFICATION_ATTEMPT,
    LOGIN_FAILED,
    SIGNUP_ATTEMPT,
    RESEND_VERIFICATION_ATTEMPT,
    PASSWORD_RESET_ATTEMPT,
)

# Successful actions that still belong in the security feed
SECURITY_FEED_SUCCESS_ACTIONS = (EMAIL_VERIFIED, USER_CREATED, LOGIN_SUCCESS)

GENERIC_ERROR_MESSAGE = "An unexpected error occurred. Please try again."


class AuditStore(Protocol):
    async def insert_audit_entry(self, entry: AuditEntry) -> AuditEntry: ...

    async def list_user_audit(
        self, user_id: str, limit: int = 50, offset: int = 0
    ) -> List[AuditEntry]: ...

    async def failed_attempts_by_ip(
        self, ip_address: str, actions: Any, since: datetime
    ) -> List[FailedAttemptGroup]: ...

    async def audit_summary(self, since: datetime) -> List[AuditSummaryRow]: ...

    async def recent_security_events(
        self, since: datetime, success_actions: Any, limit: int = 100
    ) -> List[SecurityEvent]: ...

    async def delete_audit_before(self, cutoff: datetime) -> int: ...


class AuditLog:
    """Append-only record of security-relevant attempts.

    ``record`` never raises: a broken audit table must not take
    authentication down with it, so failures are logged and dropped.
    """

    def __init__(
        self,
        store: AuditStore,
        *,
        retention_days: int = 365,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.retention_days = retention_days
        self.clock = clock

    async def record(self, entry: AuditEntry) -> Optional[AuditEntry]:
        try:
            return await self.store.insert_audit_entry(entry)
        except Exception as exc:
            logger.error(
                "audit_write_failed",
                action=entry.action,
                success=entry.success,
                ip_address=entry.ip_address,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return None

    def scope(
        self,
        action: str,
        *,
        ip_address: str,
        user_agent: Optional[str] = None,
        entity_type: str = "user",
        generic_error: str = GENERIC_ERROR_MESSAGE,
    ) -> "AuditScope":
        return AuditScope(
            self,
            action,
            ip_address=ip_address,
            user_agent=user_agent,
            entity_type=entity_type,
            generic_error=generic_error,
        )

    async def user_history(
        self, user_id: str, *, limit: int = 50, offset: int = 0
    ) -> List[AuditEntry]:
        return await self.store.list_user_audit(
            user_id, limit=max(1, min(limit, 500)), offset=max(0, offset)
        )

    async def failed_attempts_by_ip(
        self, ip_address: str, *, hours: int = 24
    ) -> List[FailedAttemptGroup]:
        since = self.clock() - timedelta(hours=hours)
        return await self.store.failed_attempts_by_ip(
            ip_address, FAILED_ATTEMPT_ACTIONS, since
        )

    async def summary(self, *, days: int = 7) -> List[AuditSummaryRow]:
        since = self.clock() - timedelta(days=days)
        return await self.store.audit_summary(since)

    async def recent_security_events(
        self, *, hours: int = 24, limit: int = 100
    ) -> List[SecurityEvent]:
        since = self.clock() - timedelta(hours=hours)
        return await self.store.recent_security_events(
            since, SECURITY_FEED_SUCCESS_ACTIONS, limit=max(1, min(limit, 500))
        )

    async def cleanup(self, retention_days: Optional[int] = None) -> int:
        days = retention_days if retention_days is not None else self.retention_days
        cutoff = self.clock() - timedelta(days=days)
        deleted = await self.store.delete_audit_before(cutoff)
        logger.info("audit_cleanup", retention_days=days, deleted=deleted)
        return deleted


class AuditScope:
    """Writes exactly one audit entry when an auth flow finishes.

    The flow marks its outcome with :meth:`succeed` or :meth:`fail`. If it
    raises a ``ServiceError`` the entry records that message as a failure.
    Any other exception is recorded with its raw message and replaced by a
    ``ServerError`` carrying ``generic_error``.
    """

    def __init__(
        self,
        audit: AuditLog,
        action: str,
        *,
        ip_address: str,
        user_agent: Optional[str],
        entity_type: str,
        generic_error: str,
    ) -> None:
        self.audit = audit
        self.action = action
        self.ip_address = ip_address or "unknown"
        self.user_agent = user_agent
        self.entity_type = entity_type
        self.generic_error = generic_error
        self.user_id: Optional[str] = None
        self.entity_id: Optional[str] = None
        self.old_values: Optional[Snapshot] = None
        self.new_values: Optional[Snapshot] = None
        self.success: Optional[bool] = None
        self.error_message: Optional[str] = None
        self.entry: Optional[AuditEntry] = None

    def set_user(self, user_id: Optional[str]) -> None:
        self.user_id = user_id
        self.entity_id = user_id

    def succeed(
        self,
        action: Optional[str] = None,
        *,
        old_values: Optional[Snapshot] = None,
        new_values: Optional[Snapshot] = None,
    ) -> None:
        self.action = action or self.action
        self.success = True
        self.error_message = None
        if old_values is not None:
            self.old_values = old_values
        if new_values is not None:
            self.new_values = new_values

    def fail(
        self,
        message: str,
        action: Optional[str] = None,
        *,
        new_values: Optional[Snapshot] = None,
    ) -> None:
        self.action = action or self.action
        self.success = False
        self.error_message = message
        if new_values is not None:
            self.new_values = new_values

    async def __aenter__(self) -> "AuditScope":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if exc is None:
            if self.success is None:
                # a flow that returns without marking an outcome is a bug
                self.fail("flow finished without an outcome")
            await self._write()
            return False
        if isinstance(exc, ServiceError):
            if self.success is not False:
                self.fail(exc.message)
            await self._write()
            return False
        if not isinstance(exc, Exception):
            # cancellation and interpreter exit pass through unrecorded
            return False
        self.fail(str(exc) or type(exc).__name__)
        await self._write()
        logger.error(
            "auth_flow_unexpected_error",
            action=self.action,
            ip_address=self.ip_address,
            error=str(exc),
            error_type=type(exc).__name__,
            exc_info=exc,
        )
        raise ServerError(self.generic_error) from exc

    async def _write(self) -> None:
        self.entry = await self.audit.record(
            AuditEntry(
                action=self.action,
                entity_type=self.entity_type,
                user_id=self.user_id,
                entity_id=self.entity_id,
                ip_address=self.ip_address,
                user_agent=self.user_agent,
                old_values=self.old_values,
                new_values=self.new_values,
                success=bool(self.success),
                error_message=self.error_message,
                created_at=self.audit.clock(),
            )
        )

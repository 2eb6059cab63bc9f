from __future__ import annotations

import threading
from collections import defaultdict
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from hikariauth.logging import get_logger
from hikariauth.storage.errors import ConstraintViolation
from hikariauth.storage.models import (
    AuditEntry,
    AuditSummaryRow,
    FailedAttemptGroup,
    RapidSignup,
    SecurityEvent,
    SuspiciousIp,
    SuspiciousVerification,
    User,
    encode_snapshot,
    snapshot_email,
    utcnow,
)


class MemoryStore:
    """In-process credential store and audit table for tests and local dev.

    Mirrors the query semantics of ``PostgresStore``; rows are copied on the
    way in and out so callers never alias stored state.
    """

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.logger = get_logger(__name__)
        self.clock = clock
        self.users: Dict[str, User] = {}
        self.audit_logs: List[AuditEntry] = []
        self.applied_migrations: Dict[str, datetime] = {}
        self._next_audit_id = 1
        self._data_lock = threading.RLock()

    # -- users ---------------------------------------------------------------

    def _live_users(self) -> Iterable[User]:
        return (u for u in self.users.values() if u.deleted_at is None)

    async def create_user(self, user: User) -> User:
        with self._data_lock:
            for existing in self._live_users():
                if existing.email == user.email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if existing.username == user.username:
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}
                    )
            stored = replace(user)
            self.users[stored.id] = stored
            return replace(stored)

    async def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None or user.deleted_at is not None:
                return None
            return replace(user)

    async def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self._live_users() if u.email == email), None)
            return replace(user) if user else None

    async def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self._live_users() if u.username == username), None)
            return replace(user) if user else None

    def _mutate(self, user_id: str, **changes) -> Optional[User]:
        user = self.users.get(user_id)
        if user is None or user.deleted_at is not None:
            return None
        for key, value in changes.items():
            setattr(user, key, value)
        return replace(user)

    async def update_last_login(self, user_id: str, at: datetime) -> None:
        with self._data_lock:
            self._mutate(user_id, last_login_at=at, updated_at=at)

    async def set_verification_token(
        self, user_id: str, token: str, expires: datetime
    ) -> Optional[User]:
        with self._data_lock:
            return self._mutate(
                user_id,
                verification_token=token,
                verification_expires=expires,
                updated_at=self.clock(),
            )

    async def mark_email_verified(
        self, user_id: str, email: str, at: datetime
    ) -> Optional[User]:
        """Flip ``is_verified`` only if the row is still unverified and matches."""
        with self._data_lock:
            user = self.users.get(user_id)
            if (
                user is None
                or user.deleted_at is not None
                or user.email != email
                or user.is_verified
            ):
                return None
            return self._mutate(
                user_id,
                is_verified=True,
                verification_token=None,
                verification_expires=None,
                updated_at=at,
            )

    async def set_password_reset_token(
        self, user_id: str, token: str, expires: datetime
    ) -> Optional[User]:
        with self._data_lock:
            return self._mutate(
                user_id,
                password_reset_token=token,
                password_reset_expires=expires,
                updated_at=self.clock(),
            )

    async def complete_password_reset(
        self, user_id: str, token: str, password_hash: str, at: datetime
    ) -> Optional[User]:
        """Swap the hash if ``token`` is the row's live reset token."""
        with self._data_lock:
            user = self.users.get(user_id)
            if (
                user is None
                or user.deleted_at is not None
                or user.password_reset_token != token
                or user.password_reset_expires is None
                or user.password_reset_expires <= at
            ):
                return None
            return self._mutate(
                user_id,
                password_hash=password_hash,
                password_reset_token=None,
                password_reset_expires=None,
                updated_at=at,
            )

    async def set_admin(self, user_id: str, is_admin: bool = True) -> Optional[User]:
        with self._data_lock:
            return self._mutate(user_id, is_admin=is_admin, updated_at=self.clock())

    async def soft_delete_user(self, user_id: str, at: datetime) -> bool:
        with self._data_lock:
            return self._mutate(user_id, deleted_at=at, updated_at=at) is not None

    # -- audit log -----------------------------------------------------------

    async def insert_audit_entry(self, entry: AuditEntry) -> AuditEntry:
        with self._data_lock:
            stored = replace(entry, id=self._next_audit_id)
            self._next_audit_id += 1
            self.audit_logs.append(stored)
            return replace(stored)

    def _since(self, since: datetime) -> List[AuditEntry]:
        return [e for e in self.audit_logs if e.created_at >= since]

    async def list_user_audit(
        self, user_id: str, limit: int = 50, offset: int = 0
    ) -> List[AuditEntry]:
        with self._data_lock:
            rows = [e for e in self.audit_logs if e.user_id == user_id]
            rows.sort(key=lambda e: (e.created_at, e.id or 0), reverse=True)
            return [replace(e) for e in rows[offset : offset + limit]]

    async def failed_attempts_by_ip(
        self, ip_address: str, actions: Iterable[str], since: datetime
    ) -> List[FailedAttemptGroup]:
        wanted = set(actions)
        with self._data_lock:
            grouped: Dict[str, List[datetime]] = defaultdict(list)
            for e in self._since(since):
                if e.ip_address == ip_address and e.action in wanted and not e.success:
                    grouped[e.action].append(e.created_at)
        groups = [
            FailedAttemptGroup(action=action, attempt_count=len(stamps), last_attempt=max(stamps))
            for action, stamps in grouped.items()
        ]
        return sorted(groups, key=lambda g: g.attempt_count, reverse=True)

    async def audit_summary(self, since: datetime) -> List[AuditSummaryRow]:
        with self._data_lock:
            buckets: Dict[Tuple[datetime, str], List[AuditEntry]] = defaultdict(list)
            for e in self._since(since):
                day = e.created_at.replace(hour=0, minute=0, second=0, microsecond=0)
                buckets[(day, e.action)].append(e)
        rows = [
            AuditSummaryRow(
                date=day,
                action=action,
                total_attempts=len(entries),
                successful_attempts=sum(1 for e in entries if e.success),
                failed_attempts=sum(1 for e in entries if not e.success),
                unique_ips=len({e.ip_address for e in entries}),
            )
            for (day, action), entries in buckets.items()
        ]
        return sorted(rows, key=lambda r: (r.date, r.action), reverse=True)

    async def recent_security_events(
        self, since: datetime, success_actions: Iterable[str], limit: int = 100
    ) -> List[SecurityEvent]:
        allowed = set(success_actions)
        with self._data_lock:
            rows = [
                e
                for e in self._since(since)
                if not e.success or e.action in allowed
            ]
            rows.sort(key=lambda e: (e.created_at, e.id or 0), reverse=True)
            events = []
            for e in rows[:limit]:
                user = self.users.get(e.user_id) if e.user_id else None
                events.append(
                    SecurityEvent(
                        id=e.id or 0,
                        action=e.action,
                        success=e.success,
                        ip_address=e.ip_address,
                        created_at=e.created_at,
                        user_id=e.user_id,
                        username=user.username if user else None,
                        email=user.email if user else None,
                        error_message=e.error_message,
                    )
                )
            return events

    async def delete_audit_before(self, cutoff: datetime) -> int:
        with self._data_lock:
            before = len(self.audit_logs)
            self.audit_logs = [e for e in self.audit_logs if e.created_at >= cutoff]
            return before - len(self.audit_logs)

    async def suspicious_verifications(
        self, actions: Iterable[str], since: datetime, min_unique_ips: int
    ) -> List[SuspiciousVerification]:
        wanted = set(actions)
        with self._data_lock:
            by_email: Dict[str, List[AuditEntry]] = defaultdict(list)
            for e in self._since(since):
                if e.action not in wanted:
                    continue
                email = snapshot_email(encode_snapshot(e.new_values))
                if email:
                    by_email[email].append(e)
        results = []
        for email, entries in by_email.items():
            ips = sorted({e.ip_address for e in entries})
            if len(ips) > min_unique_ips:
                results.append(
                    SuspiciousVerification(
                        email=email,
                        unique_ips=len(ips),
                        total_attempts=len(entries),
                        ip_addresses=ips,
                    )
                )
        return sorted(results, key=lambda r: r.unique_ips, reverse=True)

    async def suspicious_ips(
        self, since: datetime, min_failures: int
    ) -> List[SuspiciousIp]:
        with self._data_lock:
            by_ip: Dict[str, List[AuditEntry]] = defaultdict(list)
            for e in self._since(since):
                if not e.success and e.ip_address != "unknown":
                    by_ip[e.ip_address].append(e)
        results = []
        for ip, entries in by_ip.items():
            if len(entries) > min_failures:
                results.append(
                    SuspiciousIp(
                        ip_address=ip,
                        failed_attempts=len(entries),
                        unique_users_affected=len(
                            {e.user_id for e in entries if e.user_id}
                        ),
                        actions_attempted=sorted({e.action for e in entries}),
                    )
                )
        return sorted(results, key=lambda r: r.failed_attempts, reverse=True)

    async def rapid_signups(
        self, actions: Iterable[str], since: datetime, min_attempts: int
    ) -> List[RapidSignup]:
        wanted = set(actions)
        with self._data_lock:
            by_ip: Dict[str, List[AuditEntry]] = defaultdict(list)
            for e in self._since(since):
                if e.action in wanted:
                    by_ip[e.ip_address].append(e)
        results = []
        for ip, entries in by_ip.items():
            if len(entries) > min_attempts:
                stamps = [e.created_at for e in entries]
                emails = []
                for e in entries:
                    email = snapshot_email(encode_snapshot(e.new_values))
                    if email and email not in emails:
                        emails.append(email)
                results.append(
                    RapidSignup(
                        ip_address=ip,
                        signup_attempts=len(entries),
                        first_attempt=min(stamps),
                        last_attempt=max(stamps),
                        attempted_emails=emails,
                    )
                )
        return sorted(results, key=lambda r: r.signup_attempts, reverse=True)

    # -- migrations ----------------------------------------------------------

    async def applied_migration_names(self) -> List[str]:
        with self._data_lock:
            return sorted(self.applied_migrations)

    async def apply_migration(self, name: str, sql: str) -> bool:
        with self._data_lock:
            if name in self.applied_migrations:
                return False
            self.applied_migrations[name] = self.clock()
            return True

    async def close(self) -> None:
        return None


class MemoryCache:
    """TTL key/value store standing in for Redis in tests and local dev.

    Expiry is evaluated lazily against ``clock`` so tests can move time
    forward without sleeping.
    """

    def __init__(
        self, *, prefix: str = "hikari:", clock: Callable[[], datetime] = utcnow
    ) -> None:
        self.prefix = prefix
        self.clock = clock
        self._data: Dict[str, Tuple[str, Optional[datetime]]] = {}
        self._lock = threading.RLock()

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def _live(self, full_key: str) -> Optional[Tuple[str, Optional[datetime]]]:
        item = self._data.get(full_key)
        if item is None:
            return None
        _, expires_at = item
        if expires_at is not None and expires_at <= self.clock():
            self._data.pop(full_key, None)
            return None
        return item

    async def set_with_expiry(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            expires_at = self.clock() + timedelta(seconds=max(1, int(ttl_seconds)))
            self._data[self._key(key)] = (value, expires_at)

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            item = self._live(self._key(key))
            return item[0] if item else None

    async def delete(self, key: str) -> bool:
        with self._lock:
            full_key = self._key(key)
            present = self._live(full_key) is not None
            self._data.pop(full_key, None)
            return present

    async def increment(self, key: str, ttl_seconds: int) -> int:
        """Increment a counter, starting its TTL on the first hit of a window."""
        with self._lock:
            full_key = self._key(key)
            item = self._live(full_key)
            if item is None:
                count = 1
                expires_at = self.clock() + timedelta(seconds=max(1, int(ttl_seconds)))
            else:
                count = int(item[0]) + 1
                expires_at = item[1]
            self._data[full_key] = (str(count), expires_at)
            return count

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        with self._lock:
            full_key = self._key(key)
            item = self._live(full_key)
            if item is None:
                return False
            self._data[full_key] = (
                item[0],
                self.clock() + timedelta(seconds=max(1, int(ttl_seconds))),
            )
            return True

    async def ttl(self, key: str) -> int:
        """Seconds until expiry; -2 when missing, -1 without expiry (Redis semantics)."""
        with self._lock:
            item = self._live(self._key(key))
            if item is None:
                return -2
            if item[1] is None:
                return -1
            return max(0, int((item[1] - self.clock()).total_seconds()))

    async def close(self) -> None:
        return None

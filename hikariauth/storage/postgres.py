from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import AsyncConnectionPool

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
    decode_snapshot,
    encode_snapshot,
)

_USER_COLUMNS = """
    id, email, username, password_hash, is_active, is_verified, is_admin,
    deleted_at, verification_token, verification_expires, password_reset_token,
    password_reset_expires, created_at, updated_at, last_login_at
"""

# Partial unique index name -> offending field
_UNIQUE_FIELDS = {
    "users_email_live_key": "email",
    "users_username_live_key": "username",
}


class PostgresStore:
    """Credential store and audit table backed by PostgreSQL.

    Every statement is parameterized; lookups always filter on
    ``deleted_at IS NULL``. Call :meth:`open` before first use.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = AsyncConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=False,
        )

    async def open(self) -> None:
        await self.pool.open()

    async def close(self) -> None:
        await self.pool.close()

    def _connect(self):
        return self.pool.connection()

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            username=row["username"],
            password_hash=row["password_hash"],
            is_active=row["is_active"],
            is_verified=row["is_verified"],
            is_admin=row["is_admin"],
            deleted_at=row.get("deleted_at"),
            verification_token=row.get("verification_token"),
            verification_expires=row.get("verification_expires"),
            password_reset_token=row.get("password_reset_token"),
            password_reset_expires=row.get("password_reset_expires"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_login_at=row.get("last_login_at"),
        )

    async def _fetch_user(self, sql: str, params: tuple) -> Optional[User]:
        async with self._connect() as conn:
            cur = await conn.execute(sql, params)
            row = await cur.fetchone()
        return self._user_from_row(row) if row else None

    # -- users ---------------------------------------------------------------

    async def create_user(self, user: User) -> User:
        try:
            async with self._connect() as conn:
                cur = await conn.execute(
                    f"""
                    INSERT INTO users (
                        id, email, username, password_hash, is_active, is_verified,
                        is_admin, verification_token, verification_expires,
                        created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (
                        user.id,
                        user.email,
                        user.username,
                        user.password_hash,
                        user.is_active,
                        user.is_verified,
                        user.is_admin,
                        user.verification_token,
                        user.verification_expires,
                        user.created_at,
                        user.updated_at,
                    ),
                )
                row = await cur.fetchone()
        except errors.UniqueViolation as exc:
            field = _UNIQUE_FIELDS.get(getattr(exc.diag, "constraint_name", None) or "")
            raise ConstraintViolation(f"{field or 'value'} already exists", {"field": field}) from exc
        return self._user_from_row(row)

    async def get_user(self, user_id: str) -> Optional[User]:
        return await self._fetch_user(
            f"SELECT {_USER_COLUMNS} FROM users WHERE id = %s AND deleted_at IS NULL",
            (user_id,),
        )

    async def get_user_by_email(self, email: str) -> Optional[User]:
        return await self._fetch_user(
            f"SELECT {_USER_COLUMNS} FROM users WHERE email = %s AND deleted_at IS NULL",
            (email,),
        )

    async def get_user_by_username(self, username: str) -> Optional[User]:
        return await self._fetch_user(
            f"SELECT {_USER_COLUMNS} FROM users WHERE username = %s AND deleted_at IS NULL",
            (username,),
        )

    async def update_last_login(self, user_id: str, at: datetime) -> None:
        async with self._connect() as conn:
            await conn.execute(
                """
                UPDATE users SET last_login_at = %s, updated_at = %s
                WHERE id = %s AND deleted_at IS NULL
                """,
                (at, at, user_id),
            )

    async def set_verification_token(
        self, user_id: str, token: str, expires: datetime
    ) -> Optional[User]:
        return await self._fetch_user(
            f"""
            UPDATE users
            SET verification_token = %s, verification_expires = %s, updated_at = now()
            WHERE id = %s AND deleted_at IS NULL
            RETURNING {_USER_COLUMNS}
            """,
            (token, expires, user_id),
        )

    async def mark_email_verified(
        self, user_id: str, email: str, at: datetime
    ) -> Optional[User]:
        """Flip ``is_verified`` once; returns None if the row was already verified."""
        return await self._fetch_user(
            f"""
            UPDATE users
            SET is_verified = TRUE,
                verification_token = NULL,
                verification_expires = NULL,
                updated_at = %s
            WHERE id = %s AND email = %s AND deleted_at IS NULL AND is_verified = FALSE
            RETURNING {_USER_COLUMNS}
            """,
            (at, user_id, email),
        )

    async def set_password_reset_token(
        self, user_id: str, token: str, expires: datetime
    ) -> Optional[User]:
        return await self._fetch_user(
            f"""
            UPDATE users
            SET password_reset_token = %s, password_reset_expires = %s, updated_at = now()
            WHERE id = %s AND deleted_at IS NULL
            RETURNING {_USER_COLUMNS}
            """,
            (token, expires, user_id),
        )

    async def complete_password_reset(
        self, user_id: str, token: str, password_hash: str, at: datetime
    ) -> Optional[User]:
        return await self._fetch_user(
            f"""
            UPDATE users
            SET password_hash = %s,
                password_reset_token = NULL,
                password_reset_expires = NULL,
                updated_at = %s
            WHERE id = %s AND deleted_at IS NULL
              AND password_reset_token = %s AND password_reset_expires > %s
            RETURNING {_USER_COLUMNS}
            """,
            (password_hash, at, user_id, token, at),
        )

    async def set_admin(self, user_id: str, is_admin: bool = True) -> Optional[User]:
        return await self._fetch_user(
            f"""
            UPDATE users SET is_admin = %s, updated_at = now()
            WHERE id = %s AND deleted_at IS NULL
            RETURNING {_USER_COLUMNS}
            """,
            (is_admin, user_id),
        )

    async def soft_delete_user(self, user_id: str, at: datetime) -> bool:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                UPDATE users SET deleted_at = %s, updated_at = %s
                WHERE id = %s AND deleted_at IS NULL
                """,
                (at, at, user_id),
            )
            return cur.rowcount > 0

    # -- audit log -----------------------------------------------------------

    async def insert_audit_entry(self, entry: AuditEntry) -> AuditEntry:
        old_values = encode_snapshot(entry.old_values)
        new_values = encode_snapshot(entry.new_values)
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                INSERT INTO audit_logs (
                    user_id, action, entity_type, entity_id, ip_address, user_agent,
                    old_values, new_values, success, error_message, created_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING id
                """,
                (
                    entry.user_id,
                    entry.action,
                    entry.entity_type,
                    entry.entity_id,
                    entry.ip_address,
                    entry.user_agent,
                    Jsonb(old_values) if old_values is not None else None,
                    Jsonb(new_values) if new_values is not None else None,
                    entry.success,
                    entry.error_message,
                    entry.created_at,
                ),
            )
            row = await cur.fetchone()
        entry.id = row["id"]
        return entry

    @staticmethod
    def _audit_from_row(row: Dict[str, Any]) -> AuditEntry:
        return AuditEntry(
            id=row["id"],
            user_id=str(row["user_id"]) if row.get("user_id") else None,
            action=row["action"],
            entity_type=row["entity_type"],
            entity_id=row.get("entity_id"),
            ip_address=row["ip_address"],
            user_agent=row.get("user_agent"),
            old_values=decode_snapshot(row.get("old_values")),
            new_values=decode_snapshot(row.get("new_values")),
            success=row["success"],
            error_message=row.get("error_message"),
            created_at=row["created_at"],
        )

    async def list_user_audit(
        self, user_id: str, limit: int = 50, offset: int = 0
    ) -> List[AuditEntry]:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                SELECT * FROM audit_logs
                WHERE user_id = %s
                ORDER BY created_at DESC, id DESC
                LIMIT %s OFFSET %s
                """,
                (user_id, limit, offset),
            )
            rows = await cur.fetchall()
        return [self._audit_from_row(row) for row in rows]

    async def failed_attempts_by_ip(
        self, ip_address: str, actions: Iterable[str], since: datetime
    ) -> List[FailedAttemptGroup]:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                SELECT action, COUNT(*) AS attempt_count, MAX(created_at) AS last_attempt
                FROM audit_logs
                WHERE ip_address = %s
                  AND success = FALSE
                  AND action = ANY(%s)
                  AND created_at >= %s
                GROUP BY action
                ORDER BY attempt_count DESC
                """,
                (ip_address, list(actions), since),
            )
            rows = await cur.fetchall()
        return [
            FailedAttemptGroup(
                action=row["action"],
                attempt_count=int(row["attempt_count"]),
                last_attempt=row["last_attempt"],
            )
            for row in rows
        ]

    async def audit_summary(self, since: datetime) -> List[AuditSummaryRow]:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                SELECT DATE_TRUNC('day', created_at) AS date,
                       action,
                       COUNT(*) AS total_attempts,
                       COUNT(*) FILTER (WHERE success) AS successful_attempts,
                       COUNT(*) FILTER (WHERE NOT success) AS failed_attempts,
                       COUNT(DISTINCT ip_address) AS unique_ips
                FROM audit_logs
                WHERE created_at >= %s
                GROUP BY DATE_TRUNC('day', created_at), action
                ORDER BY date DESC, action
                """,
                (since,),
            )
            rows = await cur.fetchall()
        return [
            AuditSummaryRow(
                date=row["date"],
                action=row["action"],
                total_attempts=int(row["total_attempts"]),
                successful_attempts=int(row["successful_attempts"]),
                failed_attempts=int(row["failed_attempts"]),
                unique_ips=int(row["unique_ips"]),
            )
            for row in rows
        ]

    async def recent_security_events(
        self, since: datetime, success_actions: Iterable[str], limit: int = 100
    ) -> List[SecurityEvent]:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                SELECT al.id, al.action, al.success, al.ip_address, al.created_at,
                       al.user_id, al.error_message, u.username, u.email
                FROM audit_logs al
                LEFT JOIN users u ON al.user_id = u.id
                WHERE al.created_at >= %s
                  AND (al.success = FALSE OR al.action = ANY(%s))
                ORDER BY al.created_at DESC, al.id DESC
                LIMIT %s
                """,
                (since, list(success_actions), limit),
            )
            rows = await cur.fetchall()
        return [
            SecurityEvent(
                id=row["id"],
                action=row["action"],
                success=row["success"],
                ip_address=row["ip_address"],
                created_at=row["created_at"],
                user_id=str(row["user_id"]) if row.get("user_id") else None,
                username=row.get("username"),
                email=row.get("email"),
                error_message=row.get("error_message"),
            )
            for row in rows
        ]

    async def delete_audit_before(self, cutoff: datetime) -> int:
        async with self._connect() as conn:
            cur = await conn.execute(
                "DELETE FROM audit_logs WHERE created_at < %s", (cutoff,)
            )
            return cur.rowcount

    async def suspicious_verifications(
        self, actions: Iterable[str], since: datetime, min_unique_ips: int
    ) -> List[SuspiciousVerification]:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                SELECT new_values->>'email' AS email,
                       COUNT(DISTINCT ip_address) AS unique_ips,
                       COUNT(*) AS total_attempts,
                       ARRAY_AGG(DISTINCT ip_address) AS ip_addresses
                FROM audit_logs
                WHERE action = ANY(%s)
                  AND created_at >= %s
                  AND new_values->>'email' IS NOT NULL
                GROUP BY new_values->>'email'
                HAVING COUNT(DISTINCT ip_address) > %s
                ORDER BY unique_ips DESC
                """,
                (list(actions), since, min_unique_ips),
            )
            rows = await cur.fetchall()
        return [
            SuspiciousVerification(
                email=row["email"],
                unique_ips=int(row["unique_ips"]),
                total_attempts=int(row["total_attempts"]),
                ip_addresses=sorted(row["ip_addresses"] or []),
            )
            for row in rows
        ]

    async def suspicious_ips(
        self, since: datetime, min_failures: int
    ) -> List[SuspiciousIp]:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                SELECT ip_address,
                       COUNT(*) AS failed_attempts,
                       COUNT(DISTINCT user_id) AS unique_users_affected,
                       ARRAY_AGG(DISTINCT action) AS actions_attempted
                FROM audit_logs
                WHERE success = FALSE
                  AND created_at >= %s
                  AND ip_address != 'unknown'
                GROUP BY ip_address
                HAVING COUNT(*) > %s
                ORDER BY failed_attempts DESC
                """,
                (since, min_failures),
            )
            rows = await cur.fetchall()
        return [
            SuspiciousIp(
                ip_address=row["ip_address"],
                failed_attempts=int(row["failed_attempts"]),
                unique_users_affected=int(row["unique_users_affected"]),
                actions_attempted=sorted(row["actions_attempted"] or []),
            )
            for row in rows
        ]

    async def rapid_signups(
        self, actions: Iterable[str], since: datetime, min_attempts: int
    ) -> List[RapidSignup]:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                SELECT ip_address,
                       COUNT(*) AS signup_attempts,
                       MIN(created_at) AS first_attempt,
                       MAX(created_at) AS last_attempt,
                       ARRAY_REMOVE(ARRAY_AGG(DISTINCT new_values->>'email'), NULL)
                           AS attempted_emails
                FROM audit_logs
                WHERE action = ANY(%s)
                  AND created_at >= %s
                GROUP BY ip_address
                HAVING COUNT(*) > %s
                ORDER BY signup_attempts DESC
                """,
                (list(actions), since, min_attempts),
            )
            rows = await cur.fetchall()
        return [
            RapidSignup(
                ip_address=row["ip_address"],
                signup_attempts=int(row["signup_attempts"]),
                first_attempt=row["first_attempt"],
                last_attempt=row["last_attempt"],
                attempted_emails=list(row["attempted_emails"] or []),
            )
            for row in rows
        ]

    # -- migrations ----------------------------------------------------------

    async def applied_migration_names(self) -> List[str]:
        """Recorded migration names; empty on a database without the table."""
        async with self._connect() as conn:
            try:
                cur = await conn.execute(
                    """
                    SELECT name FROM migrations ORDER BY name
                    """
                )
            except errors.UndefinedTable:
                self.logger.info("migrations_table_missing")
                return []
            rows = await cur.fetchall()
        return [row["name"] for row in rows]

    async def apply_migration(self, name: str, sql: str) -> bool:
        """Run ``sql`` and record ``name`` in one transaction.

        Returns False when the migration was already recorded.
        """
        async with self._connect() as conn:
            await conn.execute(sql)
            try:
                async with conn.transaction():
                    await conn.execute(
                        "INSERT INTO migrations (name) VALUES (%s)", (name,)
                    )
            except errors.UniqueViolation:
                self.logger.info("migration_already_recorded", name=name)
                return False
        self.logger.info("migration_applied", name=name)
        return True

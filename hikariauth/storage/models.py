from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    username: str
    password_hash: str
    is_active: bool = True
    is_verified: bool = False
    is_admin: bool = False
    deleted_at: Optional[datetime] = None
    verification_token: Optional[str] = None
    verification_expires: Optional[datetime] = None
    password_reset_token: Optional[str] = None
    password_reset_expires: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None

    @staticmethod
    def new_id() -> str:
        return str(uuid.uuid4())

    def public(self) -> Dict[str, str]:
        """Summary safe to return to callers; never includes the hash."""
        return {"id": self.id, "username": self.username, "email": self.email}


@dataclass
class Session:
    """Session blob stored under ``session:{user_id}``."""

    user_id: str
    email: str
    username: str
    login_time: datetime

    def to_json(self) -> str:
        return json.dumps(
            {
                "userId": self.user_id,
                "email": self.email,
                "username": self.username,
                "loginTime": self.login_time.isoformat(),
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> "Session":
        data = json.loads(raw)
        return cls(
            user_id=data["userId"],
            email=data["email"],
            username=data["username"],
            login_time=datetime.fromisoformat(data["loginTime"]),
        )


@dataclass
class TokenMirror:
    """Payload mirrored into the ephemeral store for a live one-time token."""

    user_id: str
    email: str
    username: str

    def to_json(self) -> str:
        return json.dumps(
            {"userId": self.user_id, "email": self.email, "username": self.username}
        )

    @classmethod
    def from_json(cls, raw: str) -> "TokenMirror":
        data = json.loads(raw)
        return cls(user_id=data["userId"], email=data["email"], username=data["username"])


# ---------------------------------------------------------------------------
# Audit snapshots: a closed set of payload shapes for old_values/new_values.
# ---------------------------------------------------------------------------

SNAPSHOT_SCHEMA_VERSION = 1


class SnapshotDecodeError(ValueError):
    pass


@dataclass(frozen=True)
class AccountSnapshot:
    email: Optional[str]
    username: Optional[str] = None
    kind: str = field(default="account", init=False)


@dataclass(frozen=True)
class VerificationSnapshot:
    email: Optional[str]
    is_verified: bool = False
    kind: str = field(default="verification", init=False)


@dataclass(frozen=True)
class LoginSnapshot:
    email: Optional[str]
    remember_me: bool = False
    kind: str = field(default="login", init=False)


@dataclass(frozen=True)
class PasswordSnapshot:
    email: Optional[str]
    password_changed: bool = False
    kind: str = field(default="password", init=False)


Snapshot = Union[AccountSnapshot, VerificationSnapshot, LoginSnapshot, PasswordSnapshot]

_SNAPSHOT_TYPES: Dict[str, type] = {
    "account": AccountSnapshot,
    "verification": VerificationSnapshot,
    "login": LoginSnapshot,
    "password": PasswordSnapshot,
}


def encode_snapshot(snapshot: Optional[Snapshot]) -> Optional[Dict[str, Any]]:
    if snapshot is None:
        return None
    payload = asdict(snapshot)
    payload["schema_version"] = SNAPSHOT_SCHEMA_VERSION
    return payload


def decode_snapshot(raw: Union[str, Dict[str, Any], None]) -> Optional[Snapshot]:
    """Rebuild a snapshot from its stored form.

    Accepts the JSON text or an already-parsed mapping (Postgres JSONB comes
    back as a dict). Unknown kinds or schema versions raise
    ``SnapshotDecodeError``.
    """
    if raw is None:
        return None
    data = json.loads(raw) if isinstance(raw, str) else dict(raw)
    version = data.pop("schema_version", None)
    if version != SNAPSHOT_SCHEMA_VERSION:
        raise SnapshotDecodeError(f"unsupported snapshot schema version: {version!r}")
    kind = data.pop("kind", None)
    snapshot_cls = _SNAPSHOT_TYPES.get(kind)
    if snapshot_cls is None:
        raise SnapshotDecodeError(f"unknown snapshot kind: {kind!r}")
    try:
        return snapshot_cls(**data)
    except TypeError as exc:
        raise SnapshotDecodeError(str(exc)) from exc


def snapshot_email(raw: Union[str, Dict[str, Any], None]) -> Optional[str]:
    if raw is None:
        return None
    data = json.loads(raw) if isinstance(raw, str) else raw
    return data.get("email")


@dataclass
class AuditEntry:
    action: str
    entity_type: str = "user"
    user_id: Optional[str] = None
    entity_id: Optional[str] = None
    ip_address: str = "unknown"
    user_agent: Optional[str] = None
    old_values: Optional[Snapshot] = None
    new_values: Optional[Snapshot] = None
    success: bool = True
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None


@dataclass
class FailedAttemptGroup:
    action: str
    attempt_count: int
    last_attempt: datetime


@dataclass
class AuditSummaryRow:
    date: datetime
    action: str
    total_attempts: int
    successful_attempts: int
    failed_attempts: int
    unique_ips: int


@dataclass
class SecurityEvent:
    id: int
    action: str
    success: bool
    ip_address: str
    created_at: datetime
    user_id: Optional[str] = None
    username: Optional[str] = None
    email: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class SuspiciousVerification:
    email: str
    unique_ips: int
    total_attempts: int
    ip_addresses: List[str]


@dataclass
class SuspiciousIp:
    ip_address: str
    failed_attempts: int
    unique_users_affected: int
    actions_attempted: List[str]


@dataclass
class RapidSignup:
    ip_address: str
    signup_attempts: int
    first_attempt: datetime
    last_attempt: datetime
    attempted_emails: List[str]

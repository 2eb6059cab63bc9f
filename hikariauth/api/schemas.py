from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, Field

from hikariauth.storage.models import User

_VALID_ERROR_CODES = frozenset(
    {
        "validation_error",
        "invalid_credentials",
        "invalid_token",
        "account_state",
        "conflict",
        "unauthorized",
        "forbidden",
        "not_found",
        "rate_limited",
        "server_error",
    }
)


class UserSummary(BaseModel):
    id: str
    username: str
    email: str

    @classmethod
    def from_user(cls, user: User) -> "UserSummary":
        return cls(**user.public())


class AuthResponse(BaseModel):
    """Body returned by every auth action; absent fields are omitted."""

    success: bool = True
    message: Optional[str] = None
    user: Optional[UserSummary] = None
    email: Optional[str] = None


class ErrorResponse(BaseModel):
    success: bool = False
    message: str
    code: str = Field(..., json_schema_extra={"enum": sorted(_VALID_ERROR_CODES)})
    retry_after: Optional[int] = None

    def body(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class AuditEntryOut(BaseModel):
    id: Optional[int] = None
    action: str
    entity_type: str
    user_id: Optional[str] = None
    entity_id: Optional[str] = None
    ip_address: str
    user_agent: Optional[str] = None
    old_values: Optional[dict[str, Any]] = None
    new_values: Optional[dict[str, Any]] = None
    success: bool
    error_message: Optional[str] = None
    created_at: datetime


class SecurityEventOut(BaseModel):
    id: int
    action: str
    success: bool
    ip_address: str
    created_at: datetime
    user_id: Optional[str] = None
    username: Optional[str] = None
    email: Optional[str] = None
    error_message: Optional[str] = None


class FailedAttemptOut(BaseModel):
    action: str
    attempt_count: int
    last_attempt: datetime


class SummaryRowOut(BaseModel):
    date: datetime
    action: str
    total_attempts: int
    successful_attempts: int
    failed_attempts: int
    unique_ips: int


class SuspiciousVerificationOut(BaseModel):
    email: str
    unique_ips: int
    total_attempts: int
    ip_addresses: List[str]


class SuspiciousIpOut(BaseModel):
    ip_address: str
    failed_attempts: int
    unique_users_affected: int
    actions_attempted: List[str]


class RapidSignupOut(BaseModel):
    ip_address: str
    signup_attempts: int
    first_attempt: datetime
    last_attempt: datetime
    attempted_emails: List[str]


class SuspiciousActivityOut(BaseModel):
    generated_at: datetime
    suspicious_verifications: List[SuspiciousVerificationOut] = []
    suspicious_ips: List[SuspiciousIpOut] = []
    rapid_signups: List[RapidSignupOut] = []


class AdminResponse(BaseModel):
    success: bool = True
    data: Any = None

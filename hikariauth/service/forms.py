from __future__ import annotations

import re
import unicodedata
from typing import Any, Mapping, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError
from pydantic import field_validator, model_validator

from hikariauth.service.errors import ValidationError

FormT = TypeVar("FormT", bound=BaseModel)

INVALID_EMAIL = "Invalid email address"


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F)) | set(
        chr(c) for c in range(0x2066, 0x206A)
    )
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError("must be text")
    return value


def normalize_email(value: Any, *, required_message: str = INVALID_EMAIL) -> str:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValueError(required_message)
    if not isinstance(value, str):
        raise ValueError(INVALID_EMAIL)
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254 or len(normalized) < 3:
        raise ValueError(INVALID_EMAIL)
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise ValueError(INVALID_EMAIL)
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError(INVALID_EMAIL)
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError(INVALID_EMAIL)
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError(INVALID_EMAIL)
    return normalized


def _validate_new_password(value: Any) -> str:
    password = _as_text(value)
    if len(password) < 8:
        raise ValueError("Password must be at least 8 characters")
    if len(password) > 128:
        raise ValueError("Password must be less than 128 characters")
    return password


def _truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return False


class _Form(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", validate_default=True)


class SignupForm(_Form):
    username: str = ""
    email: str = ""
    password: str = ""
    confirm_password: str = Field(default="", alias="confirmPassword")
    agree_terms: bool = Field(default=False, alias="agreeTerms")

    @field_validator("username", mode="before")
    @classmethod
    def _validate_username(cls, value: Any) -> str:
        username = _normalize_unicode(_as_text(value).strip())
        if len(username) < 3:
            raise ValueError("Username must be at least 3 characters")
        if len(username) > 30:
            raise ValueError("Username must be at most 30 characters")
        if not _USERNAME_PATTERN.match(username):
            raise ValueError(
                "Username can only contain letters, numbers, underscores, and hyphens"
            )
        return username

    @field_validator("email", mode="before")
    @classmethod
    def _validate_email(cls, value: Any) -> str:
        return normalize_email(value)

    @field_validator("password", mode="before")
    @classmethod
    def _validate_password(cls, value: Any) -> str:
        return _validate_new_password(value)

    @field_validator("confirm_password", mode="before")
    @classmethod
    def _coerce_confirmation(cls, value: Any) -> str:
        return _as_text(value)

    @field_validator("agree_terms", mode="before")
    @classmethod
    def _coerce_terms(cls, value: Any) -> bool:
        return _truthy(value)

    @model_validator(mode="after")
    def _check_terms_and_confirmation(self) -> "SignupForm":
        if not self.agree_terms:
            raise ValueError("You must agree to the terms")
        if self.password != self.confirm_password:
            raise ValueError("Passwords don't match")
        return self


class LoginForm(_Form):
    email: str = ""
    password: str = ""
    remember_me: bool = Field(default=False, alias="rememberMe")

    @field_validator("email", mode="before")
    @classmethod
    def _validate_email(cls, value: Any) -> str:
        return normalize_email(value)

    @field_validator("password", mode="before")
    @classmethod
    def _validate_password(cls, value: Any) -> str:
        password = _as_text(value)
        if not password:
            raise ValueError("Password is required")
        if len(password) > 128:
            raise ValueError("Invalid email or password")
        return password

    @field_validator("remember_me", mode="before")
    @classmethod
    def _coerce_remember(cls, value: Any) -> bool:
        return _truthy(value)


class EmailForm(_Form):
    """Single email field used by forgot-password."""

    email: str = ""

    @field_validator("email", mode="before")
    @classmethod
    def _validate_email(cls, value: Any) -> str:
        return normalize_email(value)


class ResendVerificationForm(_Form):
    email: str = ""

    @field_validator("email", mode="before")
    @classmethod
    def _validate_email(cls, value: Any) -> str:
        return normalize_email(value, required_message="Email address is required")


class TokenForm(_Form):
    token: str = ""

    @field_validator("token", mode="before")
    @classmethod
    def _validate_token(cls, value: Any) -> str:
        token = _as_text(value).strip()
        if not token or len(token) > 4096:
            raise ValueError("Token is required")
        return token


class PasswordResetForm(TokenForm):
    password: str = ""
    confirm_password: str = Field(default="", alias="confirmPassword")

    @field_validator("password", mode="before")
    @classmethod
    def _validate_password(cls, value: Any) -> str:
        return _validate_new_password(value)

    @field_validator("confirm_password", mode="before")
    @classmethod
    def _coerce_confirmation(cls, value: Any) -> str:
        return _as_text(value)

    @model_validator(mode="after")
    def _check_confirmation(self) -> "PasswordResetForm":
        if self.password != self.confirm_password:
            raise ValueError("Passwords don't match")
        return self


def _first_message(exc: PydanticValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    first = errors[0]
    ctx_error = (first.get("ctx") or {}).get("error")
    if isinstance(ctx_error, Exception):
        return str(ctx_error)
    return first.get("msg", "Invalid request")


def parse_form(form_cls: Type[FormT], data: Mapping[str, Any] | None) -> FormT:
    """Validate ``data`` into ``form_cls``; the first problem becomes the message."""
    try:
        return form_cls.model_validate(dict(data or {}))
    except PydanticValidationError as exc:
        raise ValidationError(_first_message(exc)) from exc

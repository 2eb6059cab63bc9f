from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from hikariauth.config import Settings
from hikariauth.logging import get_logger, redact_email
from hikariauth.service import audit as actions
from hikariauth.service import rate_limit as limits
from hikariauth.service.audit import AuditLog, AuditScope
from hikariauth.service.errors import (
    AccountStateError,
    ConflictError,
    InvalidCredentialsError,
    ServerError,
    TokenInvalidError,
    ValidationError,
)
from hikariauth.service.forms import (
    EmailForm,
    LoginForm,
    PasswordResetForm,
    ResendVerificationForm,
    SignupForm,
    TokenForm,
    parse_form,
)
from hikariauth.service.rate_limit import RateLimiter
from hikariauth.service.tokens import (
    PURPOSE_EMAIL_VERIFICATION,
    PURPOSE_PASSWORD_RESET,
    PURPOSE_SESSION,
    TokenCodec,
    TokenInvalid,
)
from hikariauth.storage.errors import ConstraintViolation
from hikariauth.storage.models import (
    AccountSnapshot,
    LoginSnapshot,
    PasswordSnapshot,
    Session,
    TokenMirror,
    User,
    VerificationSnapshot,
    utcnow,
)

logger = get_logger(__name__)

# Caller-facing messages. Generic where detail would reveal whether an
# account exists, specific where it would not.
SIGNUP_SUCCESS = (
    "Account created successfully! Please check your email to verify your account."
)
EMAIL_TAKEN = "An account with this email already exists"
USERNAME_TAKEN = "This username is already taken"
INVALID_LOGIN = "Invalid email or password"
ACCOUNT_DEACTIVATED = "This account has been deactivated. Please contact support."
EMAIL_NOT_VERIFIED = "Please verify your email address before logging in"
LOGIN_SUCCESS = "Logged in successfully"
LOGOUT_SUCCESS = "Logged out successfully"
FORGOT_PASSWORD_ACCEPTED = (
    "If an account with this email exists, you will receive a password reset link."
)
INVALID_VERIFICATION_TOKEN = "Invalid or expired verification token"
EMAIL_VERIFIED = "Email verified successfully! You can now log in."
ALREADY_VERIFIED = "This email address is already verified. You can log in now."
RESEND_ACCEPTED = (
    "If an unverified account with this email exists, a new verification email has been sent."
)
INVALID_RESET_TOKEN = "Invalid or expired password reset token"
PASSWORD_RESET_DONE = "Your password has been reset. You can now log in."

SIGNUP_ERROR = "An error occurred during account creation. Please try again."
LOGIN_ERROR = "An error occurred during login. Please try again."
FORGOT_ERROR = "An error occurred while processing your request. Please try again."
VERIFY_ERROR = "An error occurred during verification. Please try again."
RESEND_ERROR = "An error occurred while sending verification email. Please try again."
RESET_ERROR = "An error occurred while resetting your password. Please try again."


class CredentialStore(Protocol):
    async def create_user(self, user: User) -> User: ...

    async def get_user(self, user_id: str) -> Optional[User]: ...

    async def get_user_by_email(self, email: str) -> Optional[User]: ...

    async def get_user_by_username(self, username: str) -> Optional[User]: ...

    async def update_last_login(self, user_id: str, at: datetime) -> None: ...

    async def set_verification_token(
        self, user_id: str, token: str, expires: datetime
    ) -> Optional[User]: ...

    async def mark_email_verified(
        self, user_id: str, email: str, at: datetime
    ) -> Optional[User]: ...

    async def set_password_reset_token(
        self, user_id: str, token: str, expires: datetime
    ) -> Optional[User]: ...

    async def complete_password_reset(
        self, user_id: str, token: str, password_hash: str, at: datetime
    ) -> Optional[User]: ...


class EphemeralStore(Protocol):
    async def set_with_expiry(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def delete(self, key: str) -> bool: ...

    async def expire(self, key: str, ttl_seconds: int) -> bool: ...

    async def ttl(self, key: str) -> int: ...


class Notifier(Protocol):
    async def send_email_verification(self, to_email: str, token: str) -> bool: ...

    async def send_password_reset(self, to_email: str, token: str) -> bool: ...


@dataclass
class RequestContext:
    ip_address: str = "unknown"
    user_agent: Optional[str] = None


@dataclass
class AuthResult:
    message: str
    user: Optional[User] = None
    email: Optional[str] = None
    session_token: Optional[str] = None
    session_ttl: Optional[int] = None


def session_key(user_id: str) -> str:
    return f"session:{user_id}"


def _attempted_email(data: Mapping[str, Any] | None) -> Optional[str]:
    """Best-effort email from raw input, for audit snapshots of rejected requests."""
    value = (data or {}).get("email")
    if not isinstance(value, str) or not value.strip():
        return None
    return value.strip().lower()[:254]


class AuthService:
    """Signup, login, logout, verification and password reset flows.

    Each flow consults the rate limiter first, then validates input, then
    touches the credential and ephemeral stores, and writes exactly one
    audit entry through an :class:`AuditScope` whatever the outcome.
    """

    def __init__(
        self,
        store: CredentialStore,
        cache: EphemeralStore,
        *,
        codec: TokenCodec,
        limiter: RateLimiter,
        audit: AuditLog,
        notifier: Notifier,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.cache = cache
        self.codec = codec
        self.limiter = limiter
        self.audit = audit
        self.notifier = notifier
        self.settings = settings
        self.clock = clock
        self._pwd_hasher = PasswordHasher(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            parallelism=settings.argon2_parallelism,
            type=Type.ID,
        )
        self.logger = logger

    def _now(self) -> datetime:
        return self.clock()

    # -- helpers ---------------------------------------------------------------

    def verification_key(self, token: str) -> str:
        return f"verification:{self.codec.digest(token)}"

    def reset_key(self, token: str) -> str:
        return f"reset:{self.codec.digest(token)}"

    async def hash_password(self, password: str) -> str:
        return await asyncio.to_thread(self._pwd_hasher.hash, password)

    async def _verify_password(self, password_hash: str, password: str) -> bool:
        try:
            return await asyncio.to_thread(self._pwd_hasher.verify, password_hash, password)
        except (VerificationError, InvalidHash):
            return False

    async def _write_mirror(self, key: str, user: User, ttl_seconds: int) -> None:
        mirror = TokenMirror(user_id=user.id, email=user.email, username=user.username)
        await self.cache.set_with_expiry(key, mirror.to_json(), ttl_seconds)

    async def _load_mirror(self, key: str) -> Optional[TokenMirror]:
        raw = await self.cache.get(key)
        if raw is None:
            return None
        try:
            return TokenMirror.from_json(raw)
        except (ValueError, KeyError, TypeError):
            self.logger.warning("token_mirror_corrupt", key_kind=key.split(":", 1)[0])
            return None

    def _issue_verification_token(self, user_id: str, email: str) -> str:
        return self.codec.issue(
            {"purpose": PURPOSE_EMAIL_VERIFICATION, "userId": user_id, "email": email},
            self.settings.verification_ttl_seconds,
        )

    async def _notify(self, kind: str, send, email: str, token: str) -> None:
        """Fire-and-forget delivery; a mail outage never fails the flow."""
        try:
            delivered = await send(email, token)
        except Exception as exc:
            self.logger.error(
                "notification_failed", kind=kind, to=redact_email(email), error=str(exc)
            )
            return
        if not delivered:
            self.logger.warning("notification_not_delivered", kind=kind, to=redact_email(email))

    def _scope(self, action: str, ctx: RequestContext, generic_error: str, **kwargs) -> AuditScope:
        return self.audit.scope(
            action,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
            generic_error=generic_error,
            **kwargs,
        )

    # -- signup ----------------------------------------------------------------

    async def signup(self, data: Mapping[str, Any], ctx: RequestContext) -> AuthResult:
        async with self._scope(actions.SIGNUP_ATTEMPT, ctx, SIGNUP_ERROR) as scope:
            scope.new_values = AccountSnapshot(email=_attempted_email(data))
            await self.limiter.enforce(limits.SIGNUP, ctx.ip_address)
            form = parse_form(SignupForm, data)
            scope.new_values = AccountSnapshot(email=form.email, username=form.username)

            if await self.store.get_user_by_email(form.email):
                raise ConflictError(EMAIL_TAKEN)
            if await self.store.get_user_by_username(form.username):
                raise ConflictError(USERNAME_TAKEN)

            password_hash = await self.hash_password(form.password)
            now = self._now()
            user_id = User.new_id()
            token = self._issue_verification_token(user_id, form.email)
            ttl = self.settings.verification_ttl_seconds
            try:
                user = await self.store.create_user(
                    User(
                        id=user_id,
                        email=form.email,
                        username=form.username,
                        password_hash=password_hash,
                        is_active=True,
                        is_verified=False,
                        verification_token=token,
                        verification_expires=now + timedelta(seconds=ttl),
                        created_at=now,
                        updated_at=now,
                    )
                )
            except ConstraintViolation as exc:
                # lost a race with a concurrent signup
                raise ConflictError(
                    USERNAME_TAKEN if exc.field == "username" else EMAIL_TAKEN
                ) from exc

            await self._write_mirror(self.verification_key(token), user, ttl)
            await self._notify(
                "email_verification", self.notifier.send_email_verification, user.email, token
            )
            scope.set_user(user.id)
            scope.succeed(actions.USER_CREATED)
            self.logger.info("user_created", user_id=user.id)
            return AuthResult(SIGNUP_SUCCESS, user=user)

    # -- login -----------------------------------------------------------------

    async def _count_failed_login(self, ctx: RequestContext) -> None:
        await self.limiter.record_failure(limits.LOGIN_FAILED, ctx.ip_address)

    async def login(self, data: Mapping[str, Any], ctx: RequestContext) -> AuthResult:
        async with self._scope(
            actions.LOGIN_FAILED, ctx, LOGIN_ERROR, entity_type="session"
        ) as scope:
            scope.new_values = LoginSnapshot(email=_attempted_email(data))
            await self.limiter.ensure_allowed(limits.LOGIN_FAILED, ctx.ip_address)
            try:
                form = parse_form(LoginForm, data)
            except ValidationError:
                await self._count_failed_login(ctx)
                raise
            scope.new_values = LoginSnapshot(email=form.email, remember_me=form.remember_me)

            user = await self.store.get_user_by_email(form.email)
            if user is None:
                scope.fail("unknown email")
                await self._count_failed_login(ctx)
                raise InvalidCredentialsError(INVALID_LOGIN)
            scope.set_user(user.id)
            if not await self._verify_password(user.password_hash, form.password):
                scope.fail("wrong password")
                await self._count_failed_login(ctx)
                raise InvalidCredentialsError(INVALID_LOGIN)
            if not user.is_active:
                await self._count_failed_login(ctx)
                raise AccountStateError(ACCOUNT_DEACTIVATED)
            if not user.is_verified:
                # correct password: not an attack signal, so no counter bump
                raise AccountStateError(EMAIL_NOT_VERIFIED)

            await self.limiter.clear(limits.LOGIN_FAILED, ctx.ip_address)
            now = self._now()
            await self.store.update_last_login(user.id, now)
            ttl = (
                self.settings.remember_me_ttl_seconds
                if form.remember_me
                else self.settings.session_ttl_seconds
            )
            token = self.codec.issue(
                {
                    "purpose": PURPOSE_SESSION,
                    "userId": user.id,
                    "email": user.email,
                    "username": user.username,
                },
                ttl,
            )
            session = Session(
                user_id=user.id, email=user.email, username=user.username, login_time=now
            )
            await self.cache.set_with_expiry(session_key(user.id), session.to_json(), ttl)
            user.last_login_at = now
            scope.succeed(actions.LOGIN_SUCCESS)
            return AuthResult(LOGIN_SUCCESS, user=user, session_token=token, session_ttl=ttl)

    # -- logout ----------------------------------------------------------------

    async def _end_session(self, scope: AuditScope, token: Optional[str]) -> None:
        if not token:
            scope.fail("no session cookie")
            return
        try:
            claims = self.codec.verify(token, PURPOSE_SESSION, allow_expired=True)
        except TokenInvalid:
            scope.fail("undecodable session token")
            return
        user_id = claims.get("userId")
        if not isinstance(user_id, str) or not user_id:
            scope.fail("session token without user id")
            return
        scope.set_user(user_id)
        await self.cache.delete(session_key(user_id))
        scope.succeed(actions.LOGOUT_SUCCESS)

    async def logout(self, token: Optional[str], ctx: RequestContext) -> AuthResult:
        """End the session named by ``token``. Never fails for the caller."""
        try:
            async with self._scope(
                actions.LOGOUT_FAILED, ctx, LOGOUT_SUCCESS, entity_type="session"
            ) as scope:
                await self._end_session(scope, token)
        except ServerError:
            # already logged and audited by the scope
            pass
        return AuthResult(LOGOUT_SUCCESS)

    # -- forgot password -------------------------------------------------------

    async def forgot_password(self, data: Mapping[str, Any], ctx: RequestContext) -> AuthResult:
        async with self._scope(actions.PASSWORD_RESET_ATTEMPT, ctx, FORGOT_ERROR) as scope:
            scope.new_values = PasswordSnapshot(email=_attempted_email(data))
            await self.limiter.enforce(limits.PASSWORD_RESET, ctx.ip_address)
            form = parse_form(EmailForm, data)
            scope.new_values = PasswordSnapshot(email=form.email)

            user = await self.store.get_user_by_email(form.email)
            if user is None:
                scope.fail("no account for email")
                return AuthResult(FORGOT_PASSWORD_ACCEPTED)

            scope.set_user(user.id)
            ttl = self.settings.password_reset_ttl_seconds
            token = self.codec.issue(
                {"purpose": PURPOSE_PASSWORD_RESET, "userId": user.id, "email": user.email},
                ttl,
            )
            if user.password_reset_token:
                await self.cache.delete(self.reset_key(user.password_reset_token))
            await self.store.set_password_reset_token(
                user.id, token, self._now() + timedelta(seconds=ttl)
            )
            await self._write_mirror(self.reset_key(token), user, ttl)
            await self._notify(
                "password_reset", self.notifier.send_password_reset, user.email, token
            )
            scope.succeed(actions.PASSWORD_RESET_REQUESTED)
            return AuthResult(FORGOT_PASSWORD_ACCEPTED)

    # -- reset password --------------------------------------------------------

    async def reset_password(self, data: Mapping[str, Any], ctx: RequestContext) -> AuthResult:
        async with self._scope(actions.PASSWORD_RESET_ATTEMPT, ctx, RESET_ERROR) as scope:
            await self.limiter.enforce(limits.PASSWORD_RESET_CONFIRM, ctx.ip_address)
            try:
                token = parse_form(TokenForm, data).token
            except ValidationError as exc:
                raise TokenInvalidError(INVALID_RESET_TOKEN) from exc
            form = parse_form(PasswordResetForm, data)

            try:
                claims = self.codec.verify(token, PURPOSE_PASSWORD_RESET)
            except TokenInvalid as exc:
                raise TokenInvalidError(INVALID_RESET_TOKEN) from exc
            claim_email = claims.get("email")
            scope.new_values = PasswordSnapshot(email=claim_email)

            key = self.reset_key(token)
            mirror = await self._load_mirror(key)
            if mirror is None:
                scope.fail("reset token not in store")
                raise TokenInvalidError(INVALID_RESET_TOKEN)
            user = await self.store.get_user(mirror.user_id)
            if user is None or user.email != claim_email:
                scope.fail("reset token does not match account")
                raise TokenInvalidError(INVALID_RESET_TOKEN)
            scope.set_user(user.id)

            password_hash = await self.hash_password(form.password)
            updated = await self.store.complete_password_reset(
                user.id, token, password_hash, self._now()
            )
            await self.cache.delete(key)
            if updated is None:
                scope.fail("reset token no longer current on account")
                raise TokenInvalidError(INVALID_RESET_TOKEN)

            # force a fresh login everywhere
            await self.cache.delete(session_key(user.id))
            scope.succeed(
                actions.PASSWORD_RESET_SUCCESS,
                new_values=PasswordSnapshot(email=user.email, password_changed=True),
            )
            return AuthResult(PASSWORD_RESET_DONE, email=user.email)

    # -- verify email ----------------------------------------------------------

    async def verify_email(self, data: Mapping[str, Any], ctx: RequestContext) -> AuthResult:
        async with self._scope(actions.EMAIL_VERIFICATION_ATTEMPT, ctx, VERIFY_ERROR) as scope:
            await self.limiter.enforce(limits.VERIFICATION, ctx.ip_address)
            try:
                token = parse_form(TokenForm, data).token
            except ValidationError as exc:
                raise TokenInvalidError(INVALID_VERIFICATION_TOKEN) from exc
            try:
                claims = self.codec.verify(token, PURPOSE_EMAIL_VERIFICATION)
            except TokenInvalid as exc:
                raise TokenInvalidError(INVALID_VERIFICATION_TOKEN) from exc
            claim_email = claims.get("email")
            scope.new_values = VerificationSnapshot(email=claim_email)

            key = self.verification_key(token)
            mirror = await self._load_mirror(key)
            if mirror is None:
                scope.fail("verification token not in store")
                raise TokenInvalidError(INVALID_VERIFICATION_TOKEN)
            user = await self.store.get_user(mirror.user_id)
            if user is None or user.email != claim_email or mirror.email != claim_email:
                scope.fail("verification token does not match account")
                raise TokenInvalidError(INVALID_VERIFICATION_TOKEN)
            scope.set_user(user.id)

            if user.is_verified:
                await self.cache.delete(key)
                scope.succeed(new_values=VerificationSnapshot(email=user.email, is_verified=True))
                return AuthResult(ALREADY_VERIFIED, email=user.email)

            before = VerificationSnapshot(email=user.email, is_verified=False)
            updated = await self.store.mark_email_verified(user.id, claim_email, self._now())
            await self.cache.delete(key)
            if updated is None:
                current = await self.store.get_user(user.id)
                if current is not None and current.is_verified:
                    # a concurrent request verified first
                    scope.succeed(
                        new_values=VerificationSnapshot(email=user.email, is_verified=True)
                    )
                    return AuthResult(ALREADY_VERIFIED, email=user.email)
                scope.fail("verification update matched no row")
                raise TokenInvalidError(INVALID_VERIFICATION_TOKEN)

            scope.succeed(
                actions.EMAIL_VERIFIED,
                old_values=before,
                new_values=VerificationSnapshot(email=updated.email, is_verified=True),
            )
            self.logger.info("email_verified", user_id=updated.id)
            return AuthResult(EMAIL_VERIFIED, user=updated, email=updated.email)

    # -- resend verification ---------------------------------------------------

    async def resend_verification(
        self, data: Mapping[str, Any], ctx: RequestContext
    ) -> AuthResult:
        async with self._scope(actions.RESEND_VERIFICATION_ATTEMPT, ctx, RESEND_ERROR) as scope:
            scope.new_values = VerificationSnapshot(email=_attempted_email(data))
            await self.limiter.enforce(limits.RESEND_VERIFICATION, ctx.ip_address)
            form = parse_form(ResendVerificationForm, data)
            scope.new_values = VerificationSnapshot(email=form.email)

            user = await self.store.get_user_by_email(form.email)
            if user is None:
                scope.fail("no account for email")
                return AuthResult(RESEND_ACCEPTED)
            scope.set_user(user.id)
            if user.is_verified:
                scope.succeed(new_values=VerificationSnapshot(email=user.email, is_verified=True))
                return AuthResult(ALREADY_VERIFIED)

            ttl = self.settings.verification_ttl_seconds
            token = self._issue_verification_token(user.id, user.email)
            if user.verification_token:
                await self.cache.delete(self.verification_key(user.verification_token))
            await self.store.set_verification_token(
                user.id, token, self._now() + timedelta(seconds=ttl)
            )
            await self._write_mirror(self.verification_key(token), user, ttl)
            await self._notify(
                "email_verification", self.notifier.send_email_verification, user.email, token
            )
            scope.succeed(actions.VERIFICATION_EMAIL_RESENT)
            return AuthResult(RESEND_ACCEPTED)

    # -- session resolution ----------------------------------------------------

    async def authenticate(self, token: Optional[str]) -> Optional[User]:
        """Resolve a session cookie to its user, sliding the session TTL.

        Returns None for anything short of a live session belonging to an
        active, verified, non-deleted account.
        """
        if not token:
            return None
        try:
            claims = self.codec.verify(token, PURPOSE_SESSION)
        except TokenInvalid:
            return None
        user_id = claims.get("userId")
        if not isinstance(user_id, str) or not user_id:
            return None
        key = session_key(user_id)
        if await self.cache.get(key) is None:
            return None
        user = await self.store.get_user(user_id)
        if user is None or not user.is_active or not user.is_verified:
            return None
        if await self.cache.ttl(key) < self.settings.session_ttl_seconds:
            await self.cache.expire(key, self.settings.session_ttl_seconds)
        return user

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Optional, Protocol

from hikariauth.config import Settings
from hikariauth.logging import get_logger
from hikariauth.service.errors import RateLimitedError

logger = get_logger(__name__)


class CounterStore(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def delete(self, key: str) -> bool: ...

    async def increment(self, key: str, ttl_seconds: int) -> int: ...

    async def ttl(self, key: str) -> int: ...


@dataclass(frozen=True)
class RatePolicy:
    action: str
    limit: int
    window_seconds: int
    description: str

    def key(self, ip_address: str) -> str:
        return f"ratelimit:{self.action}:{ip_address or 'unknown'}"


@dataclass
class RateLimitStatus:
    count: int
    limit: int
    remaining: int
    blocked: bool
    retry_after: int = 0


# Action names used in counter keys
LOGIN_FAILED = "login_failed"
SIGNUP = "signup"
PASSWORD_RESET = "password_reset"
PASSWORD_RESET_CONFIRM = "password_reset_confirm"
VERIFICATION = "verification"
RESEND_VERIFICATION = "resend_verification"


def build_policies(settings: Settings) -> Dict[str, RatePolicy]:
    window = settings.rate_limit_window_seconds
    return {
        LOGIN_FAILED: RatePolicy(
            LOGIN_FAILED, settings.login_failed_limit, window, "failed login attempts"
        ),
        SIGNUP: RatePolicy(SIGNUP, settings.signup_rate_limit, window, "signup attempts"),
        PASSWORD_RESET: RatePolicy(
            PASSWORD_RESET,
            settings.password_reset_rate_limit,
            window,
            "password reset requests",
        ),
        PASSWORD_RESET_CONFIRM: RatePolicy(
            PASSWORD_RESET_CONFIRM,
            settings.password_reset_confirm_rate_limit,
            window,
            "password reset attempts",
        ),
        VERIFICATION: RatePolicy(
            VERIFICATION,
            settings.verification_rate_limit,
            window,
            "verification attempts",
        ),
        RESEND_VERIFICATION: RatePolicy(
            RESEND_VERIFICATION,
            settings.resend_verification_rate_limit,
            window,
            "verification email requests",
        ),
    }


class RateLimiter:
    """Fixed-window counters per (action, client IP) in the ephemeral store.

    ``status`` only reads. ``increment`` and ``hit`` go through the store's
    atomic increment, which starts the window TTL on the first hit.
    """

    def __init__(self, cache: CounterStore, policies: Dict[str, RatePolicy]) -> None:
        self.cache = cache
        self.policies = policies

    def policy(self, action: str) -> RatePolicy:
        return self.policies[action]

    async def _retry_after(self, key: str, window_seconds: int) -> int:
        ttl = await self.cache.ttl(key)
        return ttl if ttl > 0 else window_seconds

    async def status(self, key: str, limit: int, window_seconds: int = 0) -> RateLimitStatus:
        raw = await self.cache.get(key)
        try:
            count = int(raw) if raw is not None else 0
        except ValueError:
            logger.warning("rate_limit_counter_corrupt", key=key)
            count = 0
        blocked = count >= limit
        retry_after = await self._retry_after(key, window_seconds) if blocked else 0
        return RateLimitStatus(
            count=count,
            limit=limit,
            remaining=max(0, limit - count),
            blocked=blocked,
            retry_after=retry_after,
        )

    async def increment(self, key: str, window_seconds: int) -> int:
        return await self.cache.increment(key, window_seconds)

    async def reset(self, key: str) -> None:
        await self.cache.delete(key)

    async def hit(self, key: str, limit: int, window_seconds: int) -> RateLimitStatus:
        """Count this attempt and report whether it went over ``limit``."""
        count = await self.cache.increment(key, window_seconds)
        blocked = count > limit
        retry_after = await self._retry_after(key, window_seconds) if blocked else 0
        return RateLimitStatus(
            count=count,
            limit=limit,
            remaining=max(0, limit - count),
            blocked=blocked,
            retry_after=retry_after,
        )

    # -- policy helpers used by the auth flows ---------------------------------

    def _denied(self, policy: RatePolicy, status: RateLimitStatus, ip_address: str) -> RateLimitedError:
        minutes = max(1, math.ceil(status.retry_after / 60))
        logger.warning(
            "rate_limited",
            action=policy.action,
            ip_address=ip_address,
            count=status.count,
            limit=policy.limit,
            retry_after=status.retry_after,
        )
        return RateLimitedError(
            f"Too many {policy.description} ({min(status.count, policy.limit)}/{policy.limit}). "
            f"Please try again in {minutes} minute{'s' if minutes != 1 else ''}.",
            retry_after=status.retry_after,
        )

    async def enforce(self, action: str, ip_address: str) -> RateLimitStatus:
        """Count an attempt for ``action``; raise ``RateLimitedError`` past the limit."""
        policy = self.policy(action)
        status = await self.hit(policy.key(ip_address), policy.limit, policy.window_seconds)
        if status.blocked:
            raise self._denied(policy, status, ip_address)
        return status

    async def ensure_allowed(self, action: str, ip_address: str) -> RateLimitStatus:
        """Read-only gate used where only failures are counted (login)."""
        policy = self.policy(action)
        status = await self.status(policy.key(ip_address), policy.limit, policy.window_seconds)
        if status.blocked:
            raise self._denied(policy, status, ip_address)
        return status

    async def record_failure(self, action: str, ip_address: str) -> int:
        policy = self.policy(action)
        return await self.increment(policy.key(ip_address), policy.window_seconds)

    async def clear(self, action: str, ip_address: str) -> None:
        await self.reset(self.policy(action).key(ip_address))

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Optional
from urllib.parse import urlparse, urlunparse

from hikariauth.config import Settings
from hikariauth.logging import get_logger
from hikariauth.service.anomaly import AnomalyDetector, AnomalyThresholds
from hikariauth.service.audit import AuditLog
from hikariauth.service.auth import AuthService
from hikariauth.service.email import EmailService
from hikariauth.service.rate_limit import RateLimiter, build_policies
from hikariauth.service.tokens import TokenCodec
from hikariauth.storage.memory import MemoryCache, MemoryStore
from hikariauth.storage.postgres import PostgresStore
from hikariauth.storage.redis_cache import RedisCache
from hikariauth.storage.models import utcnow

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Explicitly constructed service graph for one application instance.

    Stores, codec, limiter, audit log and flows are built once from
    ``settings`` and handed to whoever needs them; nothing here is a
    module-level singleton. Pass ``store``/``cache``/``notifier`` to swap in
    fakes.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        store: Any,
        cache: Any,
        notifier: Optional[Any] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.clock = clock
        self.store = store
        self.cache = cache
        self.email = notifier or EmailService.from_settings(settings)
        self.codec = TokenCodec(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            leeway_seconds=settings.token_leeway_seconds,
            clock=clock,
        )
        self.limiter = RateLimiter(cache, build_policies(settings))
        self.audit = AuditLog(
            store, retention_days=settings.audit_retention_days, clock=clock
        )
        self.anomaly = AnomalyDetector(
            store, AnomalyThresholds.from_settings(settings), clock=clock
        )
        self.auth = AuthService(
            store,
            cache,
            codec=self.codec,
            limiter=self.limiter,
            audit=self.audit,
            notifier=self.email,
            settings=settings,
            clock=clock,
        )

    @classmethod
    def in_memory(
        cls,
        settings: Settings,
        *,
        notifier: Optional[Any] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> "Runtime":
        return cls(
            settings,
            store=MemoryStore(clock=clock),
            cache=MemoryCache(prefix=settings.redis_key_prefix, clock=clock),
            notifier=notifier,
            clock=clock,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "Runtime":
        """Select backing stores from configuration.

        Postgres unless ``USE_MEMORY_STORE``; Redis unless it is unreachable
        and ``TEST_MODE`` or ``ALLOW_REDIS_FALLBACK_DEV`` permits the
        in-process cache.
        """
        logger.info(
            "runtime_init_started",
            use_memory_store=settings.use_memory_store,
            test_mode=settings.test_mode,
        )
        store = (
            MemoryStore()
            if settings.use_memory_store
            else PostgresStore(settings.database_url)
        )
        logger.info(
            "runtime_store_initialized",
            store_type="memory" if settings.use_memory_store else "postgres",
        )

        cache = None
        redis_error: Exception | None = None
        if settings.redis_url:
            try:
                candidate = RedisCache(settings.redis_url, prefix=settings.redis_key_prefix)
                candidate.verify_connection()
                cache = candidate
            except Exception as exc:
                redis_error = exc

        if cache is None:
            if not settings.test_mode and not settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for sessions, token mirrors and rate limits; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true "
                    "for the in-process fallback."
                ) from redis_error
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode="TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
            )
            cache = MemoryCache(prefix=settings.redis_key_prefix)
        return cls(settings, store=store, cache=cache)

    async def startup(self) -> None:
        if isinstance(self.store, PostgresStore):
            await self.store.open()
        logger.info(
            "runtime_started",
            store_type=type(self.store).__name__,
            cache_type=type(self.cache).__name__,
        )

    async def shutdown(self) -> None:
        for resource in (self.cache, self.store):
            try:
                await resource.close()
            except Exception as exc:
                logger.warning(
                    "runtime_close_failed",
                    resource=type(resource).__name__,
                    error=str(exc),
                )

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Protocol

from hikariauth.config import Settings
from hikariauth.logging import get_logger
from hikariauth.service.audit import (
    EMAIL_VERIFICATION_ATTEMPT,
    EMAIL_VERIFIED,
    RESEND_VERIFICATION_ATTEMPT,
    SIGNUP_ATTEMPT,
    USER_CREATED,
    VERIFICATION_EMAIL_RESENT,
)
from hikariauth.storage.models import (
    RapidSignup,
    SuspiciousIp,
    SuspiciousVerification,
    utcnow,
)

logger = get_logger(__name__)

VERIFICATION_ACTIONS = (
    EMAIL_VERIFICATION_ATTEMPT,
    EMAIL_VERIFIED,
    RESEND_VERIFICATION_ATTEMPT,
    VERIFICATION_EMAIL_RESENT,
)
SIGNUP_ACTIONS = (SIGNUP_ATTEMPT, USER_CREATED)


class AnomalyStore(Protocol):
    async def suspicious_verifications(
        self, actions: Any, since: datetime, min_unique_ips: int
    ) -> List[SuspiciousVerification]: ...

    async def suspicious_ips(
        self, since: datetime, min_failures: int
    ) -> List[SuspiciousIp]: ...

    async def rapid_signups(
        self, actions: Any, since: datetime, min_attempts: int
    ) -> List[RapidSignup]: ...


@dataclass(frozen=True)
class AnomalyThresholds:
    verification_unique_ips: int = 3
    verification_window: timedelta = timedelta(hours=24)
    failed_attempts: int = 10
    failed_window: timedelta = timedelta(hours=24)
    signup_attempts: int = 5
    signup_window: timedelta = timedelta(hours=1)

    @classmethod
    def from_settings(cls, settings: Settings) -> "AnomalyThresholds":
        return cls(
            verification_unique_ips=settings.anomaly_verification_ip_threshold,
            verification_window=timedelta(hours=settings.anomaly_verification_window_hours),
            failed_attempts=settings.anomaly_failure_threshold,
            failed_window=timedelta(hours=settings.anomaly_failure_window_hours),
            signup_attempts=settings.anomaly_signup_threshold,
            signup_window=timedelta(hours=settings.anomaly_signup_window_hours),
        )


@dataclass
class AnomalyReport:
    generated_at: datetime
    suspicious_verifications: List[SuspiciousVerification] = field(default_factory=list)
    suspicious_ips: List[SuspiciousIp] = field(default_factory=list)
    rapid_signups: List[RapidSignup] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.suspicious_verifications or self.suspicious_ips or self.rapid_signups)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class AnomalyDetector:
    """Threshold heuristics over the audit table.

    Read-only; meant for the admin dashboard and the maintenance script,
    never the request hot path. Each pattern uses "more than N" semantics.
    """

    def __init__(
        self,
        store: AnomalyStore,
        thresholds: AnomalyThresholds = AnomalyThresholds(),
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.thresholds = thresholds
        self.clock = clock

    async def suspicious_verifications(self) -> List[SuspiciousVerification]:
        """Emails hit from more distinct IPs than a person plausibly uses."""
        since = self.clock() - self.thresholds.verification_window
        return await self.store.suspicious_verifications(
            VERIFICATION_ACTIONS, since, self.thresholds.verification_unique_ips
        )

    async def suspicious_ips(self) -> List[SuspiciousIp]:
        since = self.clock() - self.thresholds.failed_window
        return await self.store.suspicious_ips(since, self.thresholds.failed_attempts)

    async def rapid_signups(self) -> List[RapidSignup]:
        since = self.clock() - self.thresholds.signup_window
        return await self.store.rapid_signups(
            SIGNUP_ACTIONS, since, self.thresholds.signup_attempts
        )

    async def detect(self) -> AnomalyReport:
        verifications, ips, signups = await asyncio.gather(
            self.suspicious_verifications(),
            self.suspicious_ips(),
            self.rapid_signups(),
        )
        report = AnomalyReport(
            generated_at=self.clock(),
            suspicious_verifications=verifications,
            suspicious_ips=ips,
            rapid_signups=signups,
        )
        if not report.is_empty:
            logger.warning(
                "anomalies_detected",
                suspicious_verifications=len(verifications),
                suspicious_ips=len(ips),
                rapid_signups=len(signups),
            )
        return report

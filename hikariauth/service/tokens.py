from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from hikariauth.logging import get_logger
from hikariauth.storage.models import utcnow

logger = get_logger(__name__)

PURPOSE_SESSION = "session"
PURPOSE_EMAIL_VERIFICATION = "email_verification"
PURPOSE_PASSWORD_RESET = "password_reset"

TOKEN_PURPOSES = frozenset(
    {PURPOSE_SESSION, PURPOSE_EMAIL_VERIFICATION, PURPOSE_PASSWORD_RESET}
)

# Claims the codec owns; callers cannot override them.
_RESERVED_CLAIMS = frozenset({"iss", "aud", "iat", "exp", "jti"})


class TokenInvalid(Exception):
    """Token rejected. Deliberately carries no reason for the caller."""

    def __init__(self) -> None:
        super().__init__("invalid or expired token")


class TokenCodec:
    """Issue and verify compact HS256 tokens.

    Tokens look like JWTs (``header.payload.signature``, base64url without
    padding). Verification rejects a wrong algorithm, signature, issuer,
    audience, purpose or an elapsed expiry with the same ``TokenInvalid``
    so a caller cannot tell tampering from expiry. The reason is only
    logged at debug level.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        leeway_seconds: int = 0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret is required")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.leeway = timedelta(seconds=max(0, leeway_seconds))
        self.clock = clock

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    @staticmethod
    def digest(token: str) -> str:
        """Stable store key fragment for a raw token string."""
        return hashlib.sha256(token.encode()).hexdigest()

    def issue(self, claims: dict[str, Any], ttl_seconds: int) -> str:
        purpose = claims.get("purpose")
        if purpose not in TOKEN_PURPOSES:
            raise ValueError(f"unknown token purpose: {purpose!r}")
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        now = self.clock()
        payload = {k: v for k, v in claims.items() if k not in _RESERVED_CLAIMS}
        payload.update(
            {
                "iss": self.issuer,
                "aud": self.audience,
                "iat": int(now.timestamp()),
                "exp": int((now + timedelta(seconds=ttl_seconds)).timestamp()),
                "jti": uuid.uuid4().hex,
            }
        )
        header_enc = self._encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":"), sort_keys=True).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _reject(self, reason: str) -> TokenInvalid:
        logger.debug("token_rejected", reason=reason)
        return TokenInvalid()

    def verify(
        self,
        token: Optional[str],
        purpose: Optional[str] = None,
        *,
        allow_expired: bool = False,
    ) -> dict[str, Any]:
        """Return the claims of a genuine token or raise ``TokenInvalid``.

        ``allow_expired`` skips only the expiry check; logout uses it to find
        the session to drop for a token that has already lapsed.
        """
        if not token or not isinstance(token, str):
            raise self._reject("missing")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise self._reject("malformed")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            raise self._reject("header_decode")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            raise self._reject("algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        try:
            signature_ok = hmac.compare_digest(expected_sig, sig_b64)
        except TypeError:
            # non-ASCII input
            signature_ok = False
        if not signature_ok:
            raise self._reject("signature")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            raise self._reject("payload_decode")
        if not isinstance(payload, dict):
            raise self._reject("payload_shape")
        if payload.get("iss") != self.issuer:
            raise self._reject("issuer")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise self._reject("audience")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise self._reject("expiry_missing")
        if not allow_expired and exp_ts <= (self.clock() - self.leeway).timestamp():
            raise self._reject("expired")
        if purpose is not None and payload.get("purpose") != purpose:
            raise self._reject("purpose")
        return payload

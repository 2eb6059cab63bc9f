from __future__ import annotations

import asyncio
import ipaddress
import uuid
from dataclasses import asdict
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, Request, Response

from hikariauth.api.schemas import (
    AdminResponse,
    AuditEntryOut,
    AuthResponse,
    FailedAttemptOut,
    SecurityEventOut,
    SummaryRowOut,
    SuspiciousActivityOut,
    UserSummary,
)
from hikariauth.service.auth import AuthResult, RequestContext
from hikariauth.service.errors import AuthenticationError, ForbiddenError
from hikariauth.service.runtime import Runtime
from hikariauth.storage.models import User, encode_snapshot

SESSION_COOKIE = "auth_token"

router = APIRouter()


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _peer_is_trusted(peer: str, trusted: list[str]) -> bool:
    try:
        peer_addr = ipaddress.ip_address(peer)
    except ValueError:
        peer_addr = None
    for entry in trusted:
        if entry == peer:
            return True
        if peer_addr is None:
            continue
        try:
            if peer_addr in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            continue
    return False


def client_ip(request: Request, trusted_proxies: Optional[list[str]] = None) -> str:
    """Socket peer, or the forwarded client when the peer is a trusted proxy.

    Forwarding headers are read in order: first ``X-Forwarded-For`` hop,
    ``X-Real-IP``, ``CF-Connecting-IP``.
    """
    peer = request.client.host if request.client and request.client.host else None
    if peer and trusted_proxies and _peer_is_trusted(peer, trusted_proxies):
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        for header in ("x-real-ip", "cf-connecting-ip"):
            value = (request.headers.get(header) or "").strip()
            if value:
                return value
    return peer or "unknown"


def request_context(request: Request) -> RequestContext:
    runtime = get_runtime(request)
    return RequestContext(
        ip_address=client_ip(request, runtime.settings.trusted_proxies),
        user_agent=request.headers.get("user-agent"),
    )


async def _read_payload(request: Request) -> dict[str, Any]:
    """Raw JSON object body; anything else becomes an empty form."""
    try:
        payload = await request.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def _auth_response(result: AuthResult) -> dict[str, Any]:
    body = AuthResponse(
        message=result.message,
        user=UserSummary.from_user(result.user) if result.user else None,
        email=result.email,
    )
    return body.model_dump(exclude_none=True)


def _set_session_cookie(response: Response, runtime: Runtime, token: str, max_age: int) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        token,
        max_age=max_age,
        httponly=True,
        secure=runtime.settings.cookie_secure,
        samesite="strict",
        path="/",
    )


def _clear_session_cookie(response: Response, runtime: Runtime) -> None:
    response.delete_cookie(
        SESSION_COOKIE,
        path="/",
        httponly=True,
        secure=runtime.settings.cookie_secure,
        samesite="strict",
    )


async def current_user(
    request: Request, runtime: Runtime = Depends(get_runtime)
) -> User:
    user = await runtime.auth.authenticate(request.cookies.get(SESSION_COOKIE))
    if user is None:
        raise AuthenticationError("Authentication required")
    return user


async def require_admin(user: User = Depends(current_user)) -> User:
    if not user.is_admin:
        raise ForbiddenError("Admin access required")
    return user


# -- auth actions --------------------------------------------------------------


@router.post("/auth/signup", status_code=201, tags=["auth"])
async def signup(request: Request, runtime: Runtime = Depends(get_runtime)):
    """Create an unverified account and send the verification email."""
    result = await runtime.auth.signup(await _read_payload(request), request_context(request))
    return _auth_response(result)


@router.post("/auth/login", tags=["auth"])
async def login(
    request: Request, response: Response, runtime: Runtime = Depends(get_runtime)
):
    """Check credentials, start a session and set the ``auth_token`` cookie."""
    result = await runtime.auth.login(await _read_payload(request), request_context(request))
    _set_session_cookie(response, runtime, result.session_token, result.session_ttl)
    return _auth_response(result)


@router.post("/auth/logout", tags=["auth"])
async def logout(
    request: Request, response: Response, runtime: Runtime = Depends(get_runtime)
):
    result = await runtime.auth.logout(
        request.cookies.get(SESSION_COOKIE), request_context(request)
    )
    _clear_session_cookie(response, runtime)
    return _auth_response(result)


@router.post("/auth/forgot", tags=["auth"])
async def forgot_password(request: Request, runtime: Runtime = Depends(get_runtime)):
    """Request a reset link. Same body whether or not the account exists."""
    result = await runtime.auth.forgot_password(
        await _read_payload(request), request_context(request)
    )
    return _auth_response(result)


@router.post("/auth/reset", tags=["auth"])
async def reset_password(
    request: Request, response: Response, runtime: Runtime = Depends(get_runtime)
):
    result = await runtime.auth.reset_password(
        await _read_payload(request), request_context(request)
    )
    _clear_session_cookie(response, runtime)
    return _auth_response(result)


@router.post("/auth/verify", tags=["auth"])
async def verify_email(request: Request, runtime: Runtime = Depends(get_runtime)):
    result = await runtime.auth.verify_email(
        await _read_payload(request), request_context(request)
    )
    body = _auth_response(result)
    body.pop("user", None)
    return body


@router.post("/auth/resend-verification", tags=["auth"])
async def resend_verification(request: Request, runtime: Runtime = Depends(get_runtime)):
    result = await runtime.auth.resend_verification(
        await _read_payload(request), request_context(request)
    )
    return _auth_response(result)


@router.get("/auth/me", tags=["auth"])
async def me(user: User = Depends(current_user)):
    return AuthResponse(user=UserSummary.from_user(user)).model_dump(exclude_none=True)


# -- admin audit surface ---------------------------------------------------------


def _entry_out(entry) -> dict[str, Any]:
    data = asdict(entry)
    data["old_values"] = encode_snapshot(entry.old_values)
    data["new_values"] = encode_snapshot(entry.new_values)
    return AuditEntryOut(**data).model_dump(mode="json")


def _rows_out(model, rows) -> list[dict[str, Any]]:
    return [model(**asdict(row)).model_dump(mode="json") for row in rows]


@router.get("/admin/audit", tags=["admin"])
async def audit_dashboard(
    runtime: Runtime = Depends(get_runtime), admin: User = Depends(require_admin)
):
    """Recent events, suspicious activity and a 7-day summary in one call."""
    events, report, summary = await asyncio.gather(
        runtime.audit.recent_security_events(hours=24, limit=50),
        runtime.anomaly.detect(),
        runtime.audit.summary(days=7),
    )
    return AdminResponse(
        data={
            "events": _rows_out(SecurityEventOut, events),
            "suspicious": SuspiciousActivityOut(**report.to_dict()).model_dump(mode="json"),
            "summary": _rows_out(SummaryRowOut, summary),
        }
    ).model_dump(mode="json")


@router.get("/admin/audit/events", tags=["admin"])
async def security_events(
    hours: int = Query(24, ge=1, le=24 * 365),
    limit: int = Query(100, ge=1, le=500),
    runtime: Runtime = Depends(get_runtime),
    admin: User = Depends(require_admin),
):
    events = await runtime.audit.recent_security_events(hours=hours, limit=limit)
    return AdminResponse(data=_rows_out(SecurityEventOut, events)).model_dump(mode="json")


@router.get("/admin/audit/suspicious", tags=["admin"])
async def suspicious_activity(
    runtime: Runtime = Depends(get_runtime), admin: User = Depends(require_admin)
):
    report = await runtime.anomaly.detect()
    return AdminResponse(
        data=SuspiciousActivityOut(**report.to_dict()).model_dump(mode="json")
    ).model_dump(mode="json")


@router.get("/admin/audit/summary", tags=["admin"])
async def audit_summary(
    days: int = Query(7, ge=1, le=365),
    runtime: Runtime = Depends(get_runtime),
    admin: User = Depends(require_admin),
):
    rows = await runtime.audit.summary(days=days)
    return AdminResponse(data=_rows_out(SummaryRowOut, rows)).model_dump(mode="json")


@router.get("/admin/audit/users/{user_id}", tags=["admin"])
async def user_audit_history(
    user_id: uuid.UUID,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    runtime: Runtime = Depends(get_runtime),
    admin: User = Depends(require_admin),
):
    entries = await runtime.audit.user_history(str(user_id), limit=limit, offset=offset)
    return AdminResponse(data=[_entry_out(e) for e in entries]).model_dump(mode="json")


@router.get("/admin/audit/ips/{ip_address}", tags=["admin"])
async def failed_attempts_for_ip(
    ip_address: str,
    hours: int = Query(24, ge=1, le=24 * 30),
    runtime: Runtime = Depends(get_runtime),
    admin: User = Depends(require_admin),
):
    groups = await runtime.audit.failed_attempts_by_ip(ip_address, hours=hours)
    return AdminResponse(data=_rows_out(FailedAttemptOut, groups)).model_dump(mode="json")

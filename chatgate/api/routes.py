from __future__ import annotations

from typing import Optional
from urllib.parse import urljoin

from fastapi import APIRouter, Query, Request, Response
from fastapi.responses import RedirectResponse

from chatgate.api.schemas import Envelope, SsoIssueResponse, UserPublic, UserResponse
from chatgate.config import Settings
from chatgate.logging import get_logger
from chatgate.service.auth import REFRESH_COOKIE, SESSION_COOKIE, SID_COOKIE
from chatgate.service.errors import AuthenticationError
from chatgate.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


def _set_cookie(
    response: Response, settings: Settings, name: str, value: str, max_age: int
) -> None:
    response.set_cookie(
        name,
        value,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        max_age=max_age,
        path="/",
    )


def _apply_token_cookies(
    response: Response,
    settings: Settings,
    *,
    access_token: Optional[str] = None,
    refresh_token: Optional[str] = None,
    session_id: Optional[str] = None,
) -> None:
    if access_token:
        _set_cookie(
            response, settings, SESSION_COOKIE, access_token, settings.access_token_ttl_seconds
        )
    if refresh_token:
        _set_cookie(
            response, settings, REFRESH_COOKIE, refresh_token, settings.refresh_token_ttl_seconds
        )
    if session_id:
        _set_cookie(
            response, settings, SID_COOKIE, session_id, settings.session_ttl_days * 24 * 3600
        )


def _redirect(request: Request, path: str) -> RedirectResponse:
    # ``path`` is already a same-origin path
    return RedirectResponse(urljoin(str(request.base_url), path), status_code=307)


@router.get("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(request: Request, response: Response):
    """Rotate the refresh cookie into a new access/refresh cookie pair."""
    runtime = get_runtime()
    pair = await runtime.auth.refresh_access(
        request.cookies.get(REFRESH_COOKIE), request.headers
    )
    if pair is None:
        raise AuthenticationError("invalid refresh")
    _apply_token_cookies(
        response,
        runtime.settings,
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
    )
    return Envelope(success=True)


@router.get("/sso/issue", response_model=SsoIssueResponse, tags=["sso"])
async def issue_sso_ticket(
    request: Request,
    aud: Optional[str] = Query(None),
    redirect: Optional[str] = Query(None),
):
    """Mint a 60-second SSO ticket from the caller's ``session_token`` cookie."""
    runtime = get_runtime()
    ticket = runtime.auth.issue_sso_ticket(
        request.cookies.get(SESSION_COOKIE),
        aud or None,
        request.headers,
        host=request.url.hostname or "",
        redirect=redirect or None,
    )
    if ticket is None:
        raise AuthenticationError("invalid session")
    return SsoIssueResponse(token=ticket.ticket, url=ticket.url)


@router.get("/sso/consume", tags=["sso"])
async def consume_sso_ticket(
    request: Request,
    token: Optional[str] = Query(None),
    sso: Optional[str] = Query(None),
    next: Optional[str] = Query(None),
):
    runtime = get_runtime()
    result = await runtime.auth.redeem_sso_ticket(
        token or sso,
        next,
        request.headers,
        request.url.hostname or "",
    )
    response = _redirect(request, result.redirect_to)
    if result.ok:
        _apply_token_cookies(
            response, runtime.settings, access_token=result.session_token
        )
    return response


@router.get("/users/me", response_model=UserResponse, tags=["users"])
async def get_current_user(request: Request):
    runtime = get_runtime()
    principal = runtime.auth.authenticate(request.cookies, request.headers)
    if principal is None:
        raise AuthenticationError("invalid session")
    return UserResponse(
        user=UserPublic(
            _id=principal.user_id,
            username=principal.username,
            name=principal.name,
            session_id=principal.session_id,
        )
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, response: Response):
    runtime = get_runtime()
    sid = request.cookies.get(SID_COOKIE)
    if sid:
        # Only the session bound to this device may be revoked from here
        sess = runtime.auth.resolve_session(sid, request.headers)
        if sess:
            await runtime.auth.logout(sess.id)
    secure = runtime.settings.cookie_secure
    for name in (SESSION_COOKIE, REFRESH_COOKIE, SID_COOKIE):
        response.delete_cookie(
            name, path="/", secure=secure, httponly=True, samesite="lax"
        )
    return Envelope(success=True)

from __future__ import annotations

from typing import Optional
from urllib.parse import quote

from fastapi import Depends, Header, Request, Response

from everest.config import Settings, get_settings
from everest.service.access import ACCESS_COOKIE, REFRESH_COOKIE
from everest.service.auth import Identity, RequestContext, TokenPair
from everest.service.devices import DEVICE_COOKIE, DeviceInfo
from everest.service.runtime import get_runtime


def request_context(request: Request) -> RequestContext:
    return RequestContext(
        user_agent=request.headers.get("user-agent", ""),
        ip_address=request.client.host if request.client else "",
    )


def _cookie_kwargs(settings: Settings) -> dict:
    return {
        "httponly": True,
        "secure": settings.is_production,
        "samesite": "none" if settings.is_production else "lax",
        "domain": settings.cookie_domain,
        "path": "/",
    }


def apply_session_cookies(response: Response, tokens: TokenPair) -> None:
    settings = get_settings()
    kwargs = _cookie_kwargs(settings)
    response.set_cookie(
        ACCESS_COOKIE,
        tokens.access_token,
        max_age=settings.access_token_ttl_minutes * 60,
        **kwargs,
    )
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh_token,
        max_age=settings.refresh_token_ttl_minutes * 60,
        **kwargs,
    )


def clear_refresh_cookie(response: Response) -> None:
    response.delete_cookie(REFRESH_COOKIE, **_cookie_kwargs(get_settings()))


def clear_session_cookies(response: Response) -> None:
    kwargs = _cookie_kwargs(get_settings())
    response.delete_cookie(ACCESS_COOKIE, **kwargs)
    response.delete_cookie(REFRESH_COOKIE, **kwargs)


async def get_identity(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
) -> Identity:
    """Authenticate the caller, re-issuing cookies when tokens were rotated."""

    runtime = get_runtime()
    outcome = await runtime.gate.authenticate(
        authorization, request.cookies, request_context(request)
    )
    if outcome.tokens is not None:
        apply_session_cookies(response, outcome.tokens)
    elif outcome.clear_refresh_cookies:
        clear_refresh_cookie(response)
    request.state.identity = outcome.identity
    request.state.session_state = outcome.state
    return outcome.identity


def require_roles(*roles: str):
    """Dependency factory accepting callers whose role covers any of ``roles``."""

    async def _require(identity: Identity = Depends(get_identity)) -> Identity:
        get_runtime().gate.authorize(identity.user_id, identity.role, roles)
        return identity

    return _require


get_staff = require_roles("moderator")
get_admin = require_roles("admin")


async def get_device(
    request: Request,
    response: Response,
    device_id: Optional[str] = Header(None, alias="device-id"),
) -> DeviceInfo:
    settings = get_settings()
    info = get_runtime().devices.resolve(
        device_id,
        request.cookies.get(DEVICE_COOKIE),
        request.headers.get("user-agent"),
    )
    response.headers["Device-ID"] = info.id
    response.headers["Device-Name"] = quote(info.name, safe=" ")
    response.set_cookie(
        DEVICE_COOKIE,
        info.id,
        max_age=settings.device_cookie_max_age_days * 24 * 60 * 60,
        httponly=True,
        secure=settings.is_production,
        samesite="strict",
        domain=settings.cookie_domain,
        path="/",
    )
    request.state.device = info
    return info

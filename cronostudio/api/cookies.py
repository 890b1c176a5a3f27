from __future__ import annotations

from typing import Optional

from fastapi import Request, Response

from cronostudio.config import Settings

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"


def _set_auth_cookie(
    response: Response, name: str, value: str, *, max_age: int, settings: Settings
) -> None:
    response.set_cookie(
        name,
        value,
        httponly=True,
        secure=settings.is_production,
        samesite="strict",
        max_age=max_age,
        path="/",
    )


def apply_auth_cookies(
    response: Response, access_token: str, refresh_token: str, settings: Settings
) -> None:
    _set_auth_cookie(
        response,
        ACCESS_COOKIE,
        access_token,
        max_age=settings.access_token_ttl_seconds,
        settings=settings,
    )
    _set_auth_cookie(
        response,
        REFRESH_COOKIE,
        refresh_token,
        max_age=settings.refresh_token_ttl_seconds,
        settings=settings,
    )


def clear_auth_cookies(response: Response, settings: Settings) -> None:
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        _set_auth_cookie(response, name, "", max_age=0, settings=settings)


def read_refresh_token(request: Request, body_token: Optional[str] = None) -> Optional[str]:
    """Refresh token from the cookie, falling back to the request body."""
    return request.cookies.get(REFRESH_COOKIE) or body_token or None

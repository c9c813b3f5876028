"""认证 Cookie 读写。"""

from dataclasses import dataclass
from typing import Literal

from fastapi import Response

from ecp_api.core.config import Settings

ACCESS_TOKEN_COOKIE = "access_token"
REFRESH_TOKEN_COOKIE = "refresh_token"
OAUTH_STATE_COOKIE = "oauth_state"

ACCESS_TOKEN_MAX_AGE = 10 * 60
# 刷新令牌按自然月过期，Cookie 取 9 个 30 天近似。
REFRESH_TOKEN_MAX_AGE = 9 * 30 * 24 * 60 * 60
OAUTH_STATE_MAX_AGE = 10 * 60


@dataclass(frozen=True)
class CookiePolicy:
    secure: bool = False
    samesite: Literal["lax", "strict", "none"] = "lax"
    domain: str | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "CookiePolicy":
        """生产环境跨站携带 Cookie 需要 Secure + SameSite=None。"""
        if settings.is_production:
            return cls(secure=True, samesite="none", domain=settings.cookie_domain)
        return cls(secure=False, samesite="lax", domain=settings.cookie_domain)


def _set_cookie(response: Response, policy: CookiePolicy, key: str, value: str, max_age: int) -> None:
    response.set_cookie(
        key=key,
        value=value,
        max_age=max_age,
        path="/",
        domain=policy.domain,
        secure=policy.secure,
        httponly=True,
        samesite=policy.samesite,
    )


def _delete_cookie(response: Response, policy: CookiePolicy, key: str) -> None:
    response.delete_cookie(
        key=key,
        path="/",
        domain=policy.domain,
        secure=policy.secure,
        httponly=True,
        samesite=policy.samesite,
    )


def set_auth_cookies(
    response: Response,
    policy: CookiePolicy,
    *,
    access_token: str,
    refresh_token: str | None = None,
) -> None:
    """写入访问令牌 Cookie，提供刷新令牌时一并写入。"""
    _set_cookie(response, policy, ACCESS_TOKEN_COOKIE, access_token, ACCESS_TOKEN_MAX_AGE)
    if refresh_token is not None:
        _set_cookie(response, policy, REFRESH_TOKEN_COOKIE, refresh_token, REFRESH_TOKEN_MAX_AGE)


def clear_auth_cookies(response: Response, policy: CookiePolicy) -> None:
    _delete_cookie(response, policy, ACCESS_TOKEN_COOKIE)
    _delete_cookie(response, policy, REFRESH_TOKEN_COOKIE)


def set_oauth_state_cookie(response: Response, policy: CookiePolicy, state: str) -> None:
    _set_cookie(response, policy, OAUTH_STATE_COOKIE, state, OAUTH_STATE_MAX_AGE)


def clear_oauth_state_cookie(response: Response, policy: CookiePolicy) -> None:
    _delete_cookie(response, policy, OAUTH_STATE_COOKIE)

"""第三方登录（Google / GitHub）授权码交换与本地建号。"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

import httpx

from ecp_api.models.enums import OAuthProviderName, Role
from ecp_api.models.user import User
from ecp_api.repositories.users import UserRepository
from ecp_api.services.local_auth import DEFAULT_HASH_ITERATIONS, hash_password, random_password

logger = logging.getLogger(__name__)

OAUTH_PROVIDERS: dict[str, dict[str, str]] = {
    OAuthProviderName.GOOGLE: {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "openid email profile",
    },
    OAuthProviderName.GITHUB: {
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "emails_url": "https://api.github.com/user/emails",
        "scope": "read:user user:email",
    },
}


@dataclass(frozen=True)
class OAuthCredentials:
    client_id: str
    client_secret: str
    redirect_uri: str


@dataclass(frozen=True)
class OAuthIdentity:
    """第三方返回的用户身份。"""

    provider: str
    email: str
    name: str
    username: str | None
    profile_picture: str | None


class OAuthClient:
    """授权地址构造与授权码换取身份。"""

    def __init__(
        self,
        credentials: dict[str, OAuthCredentials],
        *,
        timeout: float = 15.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.credentials = credentials
        self.timeout = timeout
        self.transport = transport

    def is_configured(self, provider: str) -> bool:
        return provider in OAUTH_PROVIDERS and provider in self.credentials

    def authorization_url(self, provider: str, state: str) -> str:
        """构造跳转到第三方授权页的地址。"""
        if not self.is_configured(provider):
            raise ValueError(f"OAuth provider {provider} is not configured")
        config = OAUTH_PROVIDERS[provider]
        creds = self.credentials[provider]
        params = {
            "client_id": creds.client_id,
            "redirect_uri": creds.redirect_uri,
            "response_type": "code",
            "scope": config["scope"],
            "state": state,
        }
        if provider == OAuthProviderName.GOOGLE:
            params["prompt"] = "select_account"
        return f"{config['auth_url']}?{urlencode(params)}"

    def exchange_code(self, provider: str, code: str) -> OAuthIdentity | None:
        """用授权码换取访问令牌并拉取用户信息，任一步失败返回 None。"""
        if not self.is_configured(provider):
            logger.error("oauth provider not configured provider=%s", provider)
            return None
        config = OAUTH_PROVIDERS[provider]
        creds = self.credentials[provider]

        try:
            with httpx.Client(timeout=self.timeout, follow_redirects=False, transport=self.transport) as client:
                token_response = client.post(
                    config["token_url"],
                    data={
                        "client_id": creds.client_id,
                        "client_secret": creds.client_secret,
                        "code": code,
                        "redirect_uri": creds.redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = token_result.get("access_token") if isinstance(token_result, dict) else None
                if not access_token:
                    # GitHub 对过期授权码返回 200 + error 字段。
                    logger.warning(
                        "oauth token exchange rejected provider=%s error=%s",
                        provider,
                        token_result.get("error") if isinstance(token_result, dict) else None,
                    )
                    return None

                headers = {"Authorization": f"Bearer {access_token}"}
                if provider == OAuthProviderName.GITHUB:
                    headers["Accept"] = "application/vnd.github+json"
                userinfo_response = client.get(config["userinfo_url"], headers=headers)
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
                if not isinstance(userinfo, dict):
                    logger.error("oauth userinfo invalid format provider=%s", provider)
                    return None

                if provider == OAuthProviderName.GITHUB and not userinfo.get("email"):
                    userinfo["email"] = self._github_primary_email(client, config["emails_url"], headers)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("oauth exchange failed provider=%s error=%s", provider, exc)
            return None

        return self._parse_userinfo(provider, userinfo)

    @staticmethod
    def _github_primary_email(client: httpx.Client, url: str, headers: dict[str, str]) -> str | None:
        response = client.get(url, headers=headers)
        if response.status_code != 200:
            return None
        emails = response.json()
        if not isinstance(emails, list):
            return None
        verified = [item for item in emails if isinstance(item, dict) and item.get("verified")]
        for item in verified:
            if item.get("primary"):
                return item.get("email")
        return verified[0].get("email") if verified else None

    @staticmethod
    def _parse_userinfo(provider: str, userinfo: dict[str, Any]) -> OAuthIdentity | None:
        if provider == OAuthProviderName.GOOGLE:
            email = userinfo.get("email")
            if not email:
                logger.warning("no email provided from google")
                return None
            name = userinfo.get("name") or " ".join(
                part for part in (userinfo.get("given_name"), userinfo.get("family_name")) if part
            )
            return OAuthIdentity(
                provider=provider,
                email=email,
                name=name or email.split("@")[0],
                username=email.split("@")[0],
                profile_picture=userinfo.get("picture"),
            )

        login = userinfo.get("login")
        if not login:
            logger.warning("no username provided from github")
            return None
        # 用户隐藏邮箱时使用占位地址。
        email = userinfo.get("email") or f"{login}@github.com"
        return OAuthIdentity(
            provider=provider,
            email=email,
            name=userinfo.get("name") or login,
            username=login,
            profile_picture=userinfo.get("avatar_url"),
        )


def provision_oauth_user(
    users: UserRepository,
    identity: OAuthIdentity,
    *,
    password_hash_iterations: int = DEFAULT_HASH_ITERATIONS,
) -> User | None:
    """按邮箱查找本地用户，不存在时创建一个已验证账号。"""
    user = users.find_by_email(identity.email)
    if user is not None:
        logger.debug("oauth matched existing user id=%s provider=%s", user.id, identity.provider)
        return user

    username = identity.username
    # 用户名已被已验证用户占用时不写入，避免破坏唯一性。
    if username and users.find_by_username(username, verified_only=True) is not None:
        username = None

    user = users.create(
        email=identity.email,
        name=identity.name,
        username=username,
        profile_picture=identity.profile_picture,
        password_hash=hash_password(random_password(), iterations=password_hash_iterations),
        is_verified=True,
        roles=[Role.USER.value],
    )
    if user is None:
        logger.error("oauth provisioning failed email=%s provider=%s", identity.email, identity.provider)
        return None
    logger.info("oauth user created id=%s provider=%s", user.id, identity.provider)
    return user

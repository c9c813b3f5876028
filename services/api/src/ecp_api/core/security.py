"""令牌签发与校验。

访问令牌与刷新令牌使用两把独立密钥签名：
1. 访问令牌有效期短，携带用户身份快照，用于接口鉴权。
2. 刷新令牌有效期长，仅携带用户 ID，其字符串本身即会话表的查询键。
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

import jwt
from jwt import InvalidTokenError

from ecp_api.models.user import User
from ecp_api.utils.clock import Clock, add_months, utc_now

logger = logging.getLogger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


@dataclass(frozen=True)
class RefreshToken:
    """刷新令牌及其绝对过期时间。"""

    token: str
    expires_at: datetime


class TokenIssuer:
    """访问令牌与刷新令牌的签发器。

    构造时即校验两把密钥，缺失时直接失败，避免进程在无法鉴权的状态下对外服务。
    """

    def __init__(
        self,
        *,
        access_secret: str | None,
        refresh_secret: str | None,
        algorithm: str = "HS256",
        access_ttl: timedelta = timedelta(minutes=10),
        refresh_ttl_months: int = 9,
        clock: Clock = utc_now,
    ) -> None:
        if not access_secret or not refresh_secret:
            logger.error("jwt secrets not configured properly")
            raise RuntimeError("JWT configuration missing")
        self._access_secret = access_secret
        self._refresh_secret = refresh_secret
        self._algorithm = algorithm
        self.access_ttl = access_ttl
        self.refresh_ttl_months = refresh_ttl_months
        self._clock = clock

    def create_access_token(self, user: User) -> str:
        """签发访问令牌，载荷为用户身份快照。"""
        now = self._clock()
        claims: dict[str, Any] = {
            "id": str(user.id),
            "sub": str(user.id),
            "email": user.email,
            "roles": list(user.roles or []),
            "name": user.name,
            "username": user.username,
            "profile_picture": user.profile_picture,
            "is_verified": bool(user.is_verified),
            "account_status": user.account_status,
            "type": ACCESS_TOKEN_TYPE,
            "jti": str(uuid4()),
            "iat": int(now.timestamp()),
            "exp": int((now + self.access_ttl).timestamp()),
        }
        return jwt.encode(claims, self._access_secret, algorithm=self._algorithm)

    def create_refresh_token(self, user_id: UUID | str) -> RefreshToken:
        """签发刷新令牌，过期时间按自然月推算。"""
        now = self._clock()
        expires_at = add_months(now, self.refresh_ttl_months)
        claims: dict[str, Any] = {
            "id": str(user_id),
            "sub": str(user_id),
            "type": REFRESH_TOKEN_TYPE,
            # 同一秒内多次登录也要得到不同令牌，会话表 token 列唯一。
            "jti": str(uuid4()),
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        token = jwt.encode(claims, self._refresh_secret, algorithm=self._algorithm)
        return RefreshToken(token=token, expires_at=expires_at)

    def validate_access_token(self, token: str) -> dict[str, Any] | None:
        """校验访问令牌，失败返回 None。"""
        return self._decode(token, self._access_secret, ACCESS_TOKEN_TYPE)

    def validate_refresh_token(self, token: str) -> dict[str, Any] | None:
        """校验刷新令牌，失败返回 None。"""
        return self._decode(token, self._refresh_secret, REFRESH_TOKEN_TYPE)

    def _decode(self, token: str, secret: str, expected_type: str) -> dict[str, Any] | None:
        if not token:
            return None
        try:
            claims = jwt.decode(
                token,
                key=secret,
                algorithms=[self._algorithm],
                options={"require": ["exp", "id"]},
            )
        except InvalidTokenError as exc:
            logger.debug("token validation failed type=%s error=%s", expected_type, exc)
            return None
        if claims.get("type") != expected_type:
            logger.debug("token type mismatch expected=%s got=%s", expected_type, claims.get("type"))
            return None
        return claims


def extract_bearer_token(authorization: str | None) -> str | None:
    """从 Authorization 头中提取 Bearer token，兼容重复头被逗号拼接的场景。"""
    if not authorization:
        return None
    tokens = re.findall(r"Bearer\s+([^,\s]+)", authorization, flags=re.IGNORECASE)
    for candidate in reversed(tokens):
        token = candidate.strip()
        # 调试工具未替换的变量占位符不算有效令牌。
        if token and not ("{{" in token and "}}" in token):
            return token
    return None

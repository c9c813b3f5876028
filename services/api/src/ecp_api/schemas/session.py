"""会话展示结构。"""

from datetime import datetime
from uuid import UUID

from pydantic import Field

from ecp_api.models.session import UserSession
from ecp_api.schemas.common import BaseSchema


class SessionView(BaseSchema):
    """会话列表项，不包含令牌原文。"""

    id: UUID = Field(description="会话 ID。")
    user_id: UUID = Field(description="所属用户 ID。")
    created_at: datetime | None = Field(default=None, description="登录时间。")
    expires_at: datetime = Field(description="刷新令牌过期时间。")
    ip_address: str | None = Field(default=None, description="登录时客户端 IP。")
    user_agent: str | None = Field(default=None, description="登录时客户端 User-Agent。")
    is_current: bool = Field(description="是否为当前请求所用会话。")

    @classmethod
    def from_session(cls, session: UserSession, *, current_token: str | None) -> "SessionView":
        return cls(
            id=session.id,
            user_id=session.user_id,
            created_at=session.created_at,
            expires_at=session.expires_at,
            ip_address=session.ip_address,
            user_agent=session.user_agent,
            is_current=current_token is not None and session.token == current_token,
        )


class SessionRevokeData(BaseSchema):
    count: int = Field(description="被删除的会话数量。")


class SessionDeleteData(BaseSchema):
    session_id: UUID = Field(description="被删除的会话 ID。")
    deleted: bool = Field(description="是否已删除。")

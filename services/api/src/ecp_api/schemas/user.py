"""用户对外展示结构。

只列出允许返回给客户端的字段，口令哈希、验证码与锁定状态一律不出现在响应中。
"""

from datetime import datetime
from uuid import UUID

from pydantic import Field

from ecp_api.models.user import User
from ecp_api.schemas.common import BaseSchema


class UserPublic(BaseSchema):
    """用户公开资料。"""

    id: UUID = Field(description="用户 ID。")
    email: str = Field(description="登录邮箱。")
    username: str | None = Field(default=None, description="用户名。")
    name: str = Field(description="姓名。")
    profile_picture: str | None = Field(default=None, description="头像地址。")
    roles: list[str] = Field(default_factory=list, description="角色列表。")
    is_verified: bool = Field(description="是否已完成邮箱验证。")
    account_status: str = Field(description="账号状态。")
    created_at: datetime | None = Field(default=None, description="注册时间。")
    updated_at: datetime | None = Field(default=None, description="最近更新时间。")


def to_user_public(user: User) -> dict:
    """ORM 用户转为可序列化的公开资料。"""
    return UserPublic.model_validate(user).model_dump(mode="json")


class PasswordChangedData(BaseSchema):
    """修改密码结果。"""

    changed: bool = Field(description="密码是否已修改。")
    revoked_sessions: int = Field(description="被吊销的其他设备会话数量。")


class AccountDeletedData(BaseSchema):
    deleted: bool = Field(description="账号是否已删除。")

"""登录会话模型。"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ecp_api.models.base import Base, CreatedAtMixin, UUIDPrimaryKeyMixin


class UserSession(Base, UUIDPrimaryKeyMixin, CreatedAtMixin):
    """刷新令牌与用户的绑定关系，一个用户可同时持有多个设备会话。"""

    __tablename__ = "user_sessions"

    # 用户 ID（逻辑关联 users.id，不声明数据库外键）。
    user_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    # 刷新令牌原文，作为会话查询键。
    token: Mapped[str] = mapped_column(String(1024), nullable=False, unique=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    # 创建会话时的客户端 IP。
    ip_address: Mapped[str | None] = mapped_column(String(64))
    # 创建会话时的客户端 User-Agent。
    user_agent: Mapped[str | None] = mapped_column(Text)

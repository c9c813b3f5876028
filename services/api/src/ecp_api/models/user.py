"""用户凭据模型。"""

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from ecp_api.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin
from ecp_api.models.enums import AccountStatus, Role


class User(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """平台用户，同时承载登录凭据、验证码与锁定状态。"""

    __tablename__ = "users"

    # 登录与通知主邮箱，全局唯一，统一小写存储。
    email: Mapped[str] = mapped_column(String(256), nullable=False, unique=True)
    # 用户名只在已验证用户之间唯一，由业务层保证。
    username: Mapped[str | None] = mapped_column(String(64), index=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    profile_picture: Mapped[str | None] = mapped_column(String(1024))
    # 口令哈希，不存明文。
    password_hash: Mapped[str] = mapped_column(String(256), nullable=False)

    verification_code: Mapped[str | None] = mapped_column(String(16))
    verification_code_expire_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    # 找回密码链接使用的一次性哈希。
    verification_hash: Mapped[str | None] = mapped_column(String(128), index=True)
    is_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # 连续失败次数。
    incorrect_attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # 锁定截止时间，为空表示未锁定。
    retry_timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    roles: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=lambda: [Role.USER.value])
    account_status: Mapped[str] = mapped_column(String(32), nullable=False, default=AccountStatus.ACTIVE)

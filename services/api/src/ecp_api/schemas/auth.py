"""认证请求与返回结构。"""

import re
from typing import Any

from pydantic import BaseModel, Field, field_validator

from ecp_api.schemas.common import BaseSchema
from ecp_api.schemas.user import UserPublic

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
USERNAME_PATTERN = r"^[a-zA-Z0-9._]{3,10}$"
OTP_PATTERN = r"^\d{6}$"
# 至少一个小写、一个大写、一个数字与一个特殊字符，长度不少于 8。
_STRONG_PASSWORD = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[@$!%*?&])[A-Za-z\d@$!%*?&]{8,}$")
PASSWORD_RULE_MESSAGE = (
    "Password must be at least 8 characters and contain upper and lower case letters, "
    "a number and one of @$!%*?&"
)


def ensure_strong_password(value: str) -> str:
    if not _STRONG_PASSWORD.match(value):
        raise ValueError(PASSWORD_RULE_MESSAGE)
    return value


class IdentityFields(BaseModel):
    """邮箱、用户名或通用标识三选一，具体校验在服务层完成。"""

    identifier: str | None = Field(
        default=None,
        max_length=256,
        description="邮箱或用户名，包含 @ 时按邮箱处理。",
        examples=["alice@example.com"],
    )
    email: str | None = Field(default=None, max_length=256, pattern=EMAIL_PATTERN, description="登录邮箱。")
    username: str | None = Field(default=None, max_length=64, description="用户名。")

    def identity_fields(self) -> dict[str, Any]:
        return {"identifier": self.identifier, "email": self.email, "username": self.username}


class RegisterRequest(BaseModel):
    """注册请求（以 multipart 表单提交）。"""

    name: str = Field(min_length=1, max_length=128, description="姓名。", examples=["Alice"])
    email: str = Field(
        min_length=5,
        max_length=256,
        pattern=EMAIL_PATTERN,
        description="登录邮箱。",
        examples=["alice@example.com"],
    )
    username: str | None = Field(
        default=None,
        pattern=USERNAME_PATTERN,
        description="用户名，3-10 位字母、数字、点或下划线。",
        examples=["alice"],
    )
    password: str = Field(max_length=128, description="登录密码。", examples=["StrongP@ss1"])

    @field_validator("password")
    @classmethod
    def validate_password(cls, value: str) -> str:
        return ensure_strong_password(value)


class VerifyCodeRequest(IdentityFields):
    """验证码校验请求，用于注册验证与找回密码验证。"""

    verification_code: str = Field(pattern=OTP_PATTERN, description="6 位数字验证码。", examples=["123456"])


class LoginRequest(IdentityFields):
    """口令登录请求。"""

    password: str = Field(min_length=1, max_length=128, description="登录密码。")


class ForgotPasswordRequest(IdentityFields):
    """找回密码请求。"""


class ResetPasswordRequest(IdentityFields):
    """重置密码请求。通过邮件链接重置时只需提供新密码。"""

    verification_code: str | None = Field(default=None, pattern=OTP_PATTERN, description="6 位数字验证码。")
    password: str = Field(max_length=128, description="新密码。")

    @field_validator("password")
    @classmethod
    def validate_password(cls, value: str) -> str:
        return ensure_strong_password(value)


class ChangePasswordRequest(BaseModel):
    """已登录用户修改密码请求。"""

    current_password: str = Field(min_length=1, max_length=128, description="当前密码。")
    new_password: str = Field(max_length=128, description="新密码。")
    confirm_password: str = Field(max_length=128, description="确认新密码。")

    @field_validator("new_password")
    @classmethod
    def validate_new_password(cls, value: str) -> str:
        return ensure_strong_password(value)


class AuthTokenData(BaseSchema):
    """认证成功返回结构，刷新令牌仅通过 httpOnly Cookie 下发。"""

    user: UserPublic = Field(description="当前用户公开资料。")
    access_token: str = Field(description="访问令牌，也会写入 access_token Cookie。")
    token_type: str = Field(default="bearer", description="令牌类型。")
    expires_in: int = Field(description="访问令牌有效秒数。")


class VerifiedData(BaseSchema):
    verified: bool = Field(description="验证码是否校验通过。")


class LogoutData(BaseSchema):
    logged_out: bool = Field(description="是否已完成登出。")

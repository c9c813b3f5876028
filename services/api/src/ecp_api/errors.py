"""领域异常定义。

所有领域异常均继承 HTTPException，并在 detail 中携带 code/message/details，
由统一异常处理器序列化为标准错误结构，路由层无需逐个转换。
"""

from typing import Any

from fastapi import HTTPException, status


class AppError(HTTPException):
    """领域异常基类。"""

    status_code_default: int = status.HTTP_400_BAD_REQUEST
    code: str = "BAD_REQUEST"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(
            status_code=self.status_code_default,
            detail={"code": self.code, "message": message, "details": self.details},
        )


class BadRequestError(AppError):
    """违反业务规则（已验证、验证码错误或过期等）。"""

    status_code_default = status.HTTP_400_BAD_REQUEST
    code = "BAD_REQUEST"


class UnauthorizedError(AppError):
    """凭据错误或令牌无效。"""

    status_code_default = status.HTTP_401_UNAUTHORIZED
    code = "UNAUTHORIZED"


class ForbiddenError(AppError):
    status_code_default = status.HTTP_403_FORBIDDEN
    code = "FORBIDDEN"


class NotFoundError(AppError):
    status_code_default = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"


class ConflictError(AppError):
    """邮箱或用户名已被占用。"""

    status_code_default = status.HTTP_409_CONFLICT
    code = "CONFLICT"


class TooManyRequestsError(AppError):
    """账号处于锁定窗口内。"""

    status_code_default = status.HTTP_429_TOO_MANY_REQUESTS
    code = "TOO_MANY_REQUESTS"


class InternalError(AppError):
    """必需的下游写入失败。"""

    status_code_default = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "INTERNAL_ERROR"

"""应用异常处理注册。"""

import logging

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ecp_api.utils.response import DEFAULT_ERROR_MESSAGE, error_payload

logger = logging.getLogger(__name__)

_ERROR_CODE_BY_STATUS = {
    status.HTTP_400_BAD_REQUEST: "BAD_REQUEST",
    status.HTTP_401_UNAUTHORIZED: "UNAUTHORIZED",
    status.HTTP_403_FORBIDDEN: "FORBIDDEN",
    status.HTTP_404_NOT_FOUND: "NOT_FOUND",
    status.HTTP_409_CONFLICT: "CONFLICT",
    status.HTTP_422_UNPROCESSABLE_CONTENT: "VALIDATION_ERROR",
    status.HTTP_429_TOO_MANY_REQUESTS: "TOO_MANY_REQUESTS",
    status.HTTP_500_INTERNAL_SERVER_ERROR: "INTERNAL_ERROR",
}

_MESSAGE_BY_STATUS = {
    status.HTTP_400_BAD_REQUEST: "请求参数不合法。",
    status.HTTP_401_UNAUTHORIZED: "未登录或登录状态已失效。",
    status.HTTP_403_FORBIDDEN: "无权限访问该资源。",
    status.HTTP_404_NOT_FOUND: "请求资源不存在。",
    status.HTTP_409_CONFLICT: "请求与当前数据状态冲突。",
    status.HTTP_422_UNPROCESSABLE_CONTENT: "请求参数校验失败。",
    status.HTTP_429_TOO_MANY_REQUESTS: "请求过于频繁，请稍后再试。",
}

_SUGGESTION_BY_STATUS = {
    status.HTTP_401_UNAUTHORIZED: "请重新登录后重试。",
    status.HTTP_403_FORBIDDEN: "请确认当前账号是否有权操作该资源。",
    status.HTTP_404_NOT_FOUND: "请确认资源标识是否正确，或资源是否已被删除。",
    status.HTTP_409_CONFLICT: "请更换邮箱或用户名后重试。",
    status.HTTP_422_UNPROCESSABLE_CONTENT: "请根据错误字段提示修正请求参数后重试。",
    status.HTTP_429_TOO_MANY_REQUESTS: "请等待锁定时间结束后再试。",
}


def _default_http_error_code(status_code: int) -> str:
    return _ERROR_CODE_BY_STATUS.get(status_code, "HTTP_ERROR")


def _default_http_message(status_code: int) -> str:
    return _MESSAGE_BY_STATUS.get(status_code, "请求处理失败。")


def _default_http_suggestion(status_code: int) -> str:
    return _SUGGESTION_BY_STATUS.get(status_code, "请稍后重试，若持续失败请联系管理员。")


def _parse_http_detail(detail: object, status_code: int) -> tuple[str, str, dict[str, object]]:
    code = _default_http_error_code(status_code)
    message = _default_http_message(status_code)
    details: dict[str, object] = {
        "status_code": status_code,
        "reason": code.lower(),
        "suggestion": _default_http_suggestion(status_code),
    }

    if isinstance(detail, dict):
        code = str(detail.get("code") or code)
        message = str(detail.get("message") or detail.get("detail") or message)
        raw_details = detail.get("details")
        if isinstance(raw_details, dict):
            details.update(raw_details)
        elif raw_details is not None:
            details["details"] = raw_details
        return code, message, details

    if isinstance(detail, str) and detail:
        return code, detail, details

    if detail is not None:
        details["detail"] = detail
    return code, message, details


async def http_exception_handler(request: Request, exc: HTTPException):
    """将协议异常与领域异常统一包装为标准错误结构。"""
    code, message, details = _parse_http_detail(exc.detail, exc.status_code)
    if exc.status_code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
        logger.error("request failed path=%s code=%s message=%s", request.url.path, code, message)
    return JSONResponse(
        status_code=exc.status_code,
        content=jsonable_encoder(error_payload(request, code=code, message=message, details=details)),
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """统一处理请求参数校验错误，附带字段级错误映射。"""
    normalized_errors = [
        {
            "field": ".".join(str(item) for item in err.get("loc", []) if item != "body"),
            "message": err.get("msg"),
            "type": err.get("type"),
        }
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
        content=jsonable_encoder(
            error_payload(
                request,
                code="VALIDATION_ERROR",
                message=_default_http_message(status.HTTP_422_UNPROCESSABLE_CONTENT),
                details={
                    "status_code": status.HTTP_422_UNPROCESSABLE_CONTENT,
                    "reason": "validation_error",
                    "suggestion": _default_http_suggestion(status.HTTP_422_UNPROCESSABLE_CONTENT),
                    "errors": normalized_errors,
                },
            )
        ),
    )


async def unexpected_exception_handler(request: Request, exc: Exception):
    """处理未捕获异常，记录堆栈但不向客户端泄露内部细节。"""
    logger.exception(
        "unhandled exception request_id=%s method=%s path=%s",
        getattr(request.state, "request_id", None),
        request.method,
        request.url.path,
        exc_info=exc,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_payload(
            request,
            code="INTERNAL_ERROR",
            message=DEFAULT_ERROR_MESSAGE,
            details={
                "status_code": status.HTTP_500_INTERNAL_SERVER_ERROR,
                "reason": "unexpected_exception",
                "suggestion": "请稍后重试，若持续失败请联系管理员并提供 request_id。",
            },
        ),
    )


def register_exception_handlers(app: FastAPI) -> None:
    """集中注册异常处理器。"""
    app.exception_handler(HTTPException)(http_exception_handler)
    app.exception_handler(RequestValidationError)(validation_exception_handler)
    app.exception_handler(Exception)(unexpected_exception_handler)

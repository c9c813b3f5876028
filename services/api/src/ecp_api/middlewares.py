"""应用中间件注册。"""

import logging
from time import perf_counter
import uuid

from fastapi import FastAPI, Request

logger = logging.getLogger("ecp_api.request")


async def request_id_middleware(request: Request, call_next):
    """注入请求追踪 ID，记录访问日志，并通过响应头返回耗时。"""
    request.state.request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    request.state.request_started_at = perf_counter()
    response = await call_next(request)
    elapsed_ms = round((perf_counter() - request.state.request_started_at) * 1000, 2)
    response.headers["X-Request-Id"] = request.state.request_id
    response.headers["X-Process-Time-Ms"] = str(elapsed_ms)
    logger.info(
        "request_id=%s method=%s path=%s status=%s elapsed_ms=%s",
        request.state.request_id,
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
    )
    return response


def register_middlewares(app: FastAPI) -> None:
    """集中注册中间件。"""
    app.middleware("http")(request_id_middleware)

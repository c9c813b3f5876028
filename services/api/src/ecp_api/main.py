"""FastAPI 应用入口点。"""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles

from ecp_api.api.router import api_router
from ecp_api.core.config import get_settings
from ecp_api.core.logging import setup_logging
from ecp_api.dependencies import build_token_issuer
from ecp_api.exceptions import register_exception_handlers
from ecp_api.middlewares import register_middlewares

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """启动时初始化日志并构造令牌签发器，密钥缺失直接启动失败。"""
    settings = get_settings()
    setup_logging(settings.log_level)
    app.state.token_issuer = build_token_issuer(settings)
    logger.info("application started env=%s", settings.app_env)
    yield
    logger.info("application stopped")


def create_app() -> FastAPI:
    """创建并配置 FastAPI 应用实例。"""
    settings = get_settings()
    app = FastAPI(
        title=settings.app_name,
        version="1.0.0",
        debug=settings.app_debug,
        lifespan=lifespan,
        description=(
            "电商平台认证与会话接口。\n\n"
            "所有业务接口统一返回：`{request_id, data, meta}`。\n"
            "访问令牌通过 `access_token` Cookie 或 `Authorization: Bearer` 头携带，"
            "刷新令牌仅通过 httpOnly `refresh_token` Cookie 传递。"
        ),
        openapi_tags=[
            {"name": "health", "description": "服务存活与就绪探针。"},
            {"name": "auth", "description": "注册、验证、登录、找回密码、第三方登录、令牌刷新与登出。"},
            {"name": "sessions", "description": "多设备登录会话查询与吊销。"},
            {"name": "users", "description": "当前账号资料、修改密码与注销。"},
        ],
    )

    register_middlewares(app)
    register_exception_handlers(app)
    app.include_router(api_router, prefix=settings.api_prefix)
    # 本地存储的上传文件直接由应用对外提供。
    app.mount(
        settings.storage_public_url,
        StaticFiles(directory=settings.storage_root, check_dir=False),
        name="uploads",
    )
    return app


app = create_app()

"""路由模块导出集合。"""

from . import auth, health, sessions, users

__all__ = [
    "auth",
    "health",
    "sessions",
    "users",
]

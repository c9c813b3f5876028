"""ORM 模型导出集合。"""

from ecp_api.models.session import UserSession
from ecp_api.models.user import User

__all__ = [
    "User",
    "UserSession",
]

"""持久化仓储导出集合。"""

from ecp_api.repositories.sessions import SessionRepository
from ecp_api.repositories.users import UserRepository

__all__ = ["SessionRepository", "UserRepository"]

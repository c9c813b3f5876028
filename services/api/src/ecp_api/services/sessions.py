"""多设备会话管理。"""

import logging
from uuid import UUID

from ecp_api.errors import ForbiddenError, NotFoundError, UnauthorizedError
from ecp_api.repositories.sessions import SessionRepository
from ecp_api.schemas.session import SessionView

logger = logging.getLogger(__name__)


class SessionManager:
    """查询与吊销当前用户的登录会话。"""

    def __init__(self, sessions: SessionRepository) -> None:
        self.sessions = sessions

    def list_sessions(self, user_id: UUID, current_token: str | None) -> list[SessionView]:
        """列出用户全部会话，并标记当前请求所用会话。"""
        return [
            SessionView.from_session(session, current_token=current_token)
            for session in self.sessions.find_all_for_user(user_id)
        ]

    def delete_all_except_current(self, user_id: UUID, current_token: str | None) -> int:
        """删除当前会话以外的所有会话，返回删除数量。"""
        current = self.sessions.find_by_token(current_token) if current_token else None
        if current is None:
            raise UnauthorizedError("Current session not found")
        if current.user_id != user_id:
            raise ForbiddenError("Not authorized to delete these sessions")

        count = self.sessions.delete_all_except_one(user_id, current.token)
        logger.info("revoked other sessions user_id=%s count=%s", user_id, count)
        return count

    def delete_one(self, user_id: UUID, session_id: UUID, current_token: str | None) -> None:
        """删除指定会话，不允许删除自己正在使用的会话。"""
        target = self.sessions.find_by_id(session_id)
        if target is None:
            raise NotFoundError("Session not found")
        if target.user_id != user_id:
            raise ForbiddenError("Not authorized to delete this session")
        if current_token and target.token == current_token:
            raise ForbiddenError("Cannot delete your current session. Use logout instead.")

        self.sessions.delete(target.id)
        logger.info("session revoked user_id=%s session_id=%s", user_id, session_id)

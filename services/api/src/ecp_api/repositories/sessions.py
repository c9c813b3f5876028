"""登录会话仓储。"""

import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ecp_api.models.session import UserSession

logger = logging.getLogger(__name__)


class SessionRepository:
    """user_sessions 表读写。"""

    def __init__(self, db: Session) -> None:
        self.db = db

    def create(
        self,
        user_id: UUID,
        token: str,
        expires_at: datetime,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> UserSession | None:
        """创建会话，数据库写入失败时返回 None，由调用方决定是否致命。"""
        session = UserSession(
            user_id=user_id,
            token=token,
            expires_at=expires_at,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.db.add(session)
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("create session failed user_id=%s", user_id)
            return None
        self.db.refresh(session)
        return session

    def find_by_token(self, token: str) -> UserSession | None:
        stmt = select(UserSession).where(UserSession.token == token)
        return self.db.execute(stmt).scalar_one_or_none()

    def find_by_id(self, session_id: UUID) -> UserSession | None:
        return self.db.get(UserSession, session_id)

    def find_all_for_user(self, user_id: UUID) -> list[UserSession]:
        stmt = (
            select(UserSession)
            .where(UserSession.user_id == user_id)
            .order_by(UserSession.created_at.desc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def delete(self, session_id: UUID) -> bool:
        result = self.db.execute(delete(UserSession).where(UserSession.id == session_id))
        self.db.commit()
        return result.rowcount > 0

    def delete_all_except_one(self, user_id: UUID, token: str) -> int:
        result = self.db.execute(
            delete(UserSession).where(UserSession.user_id == user_id).where(UserSession.token != token)
        )
        self.db.commit()
        return result.rowcount or 0

    def delete_all(self, user_id: UUID) -> int:
        result = self.db.execute(delete(UserSession).where(UserSession.user_id == user_id))
        self.db.commit()
        return result.rowcount or 0

"""已登录用户的账号管理：资料、改密与注销。"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError

from ecp_api.errors import BadRequestError, InternalError, NotFoundError, UnauthorizedError
from ecp_api.models.user import User
from ecp_api.repositories.sessions import SessionRepository
from ecp_api.repositories.users import UserRepository
from ecp_api.services.local_auth import DEFAULT_HASH_ITERATIONS, hash_password, verify_password
from ecp_api.services.storage import StorageError

if TYPE_CHECKING:
    from ecp_api.services.auth import FileStorage

logger = logging.getLogger(__name__)


class AccountService:
    def __init__(
        self,
        *,
        users: UserRepository,
        sessions: SessionRepository,
        storage: FileStorage,
        password_hash_iterations: int = DEFAULT_HASH_ITERATIONS,
    ) -> None:
        self.users = users
        self.sessions = sessions
        self.storage = storage
        self.password_hash_iterations = password_hash_iterations

    def get_profile(self, user_id: UUID) -> User:
        user = self.users.find_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def change_password(
        self,
        user_id: UUID,
        *,
        current_password: str,
        new_password: str,
        confirm_password: str,
        current_token: str | None = None,
    ) -> int:
        """修改密码并吊销其他设备的会话，返回被吊销的会话数。"""
        if new_password != confirm_password:
            raise BadRequestError("New password and confirm password do not match")

        user = self.get_profile(user_id)
        if not verify_password(current_password, user.password_hash):
            raise UnauthorizedError("Current password is incorrect")

        updated = self.users.update(
            user,
            password_hash=hash_password(new_password, iterations=self.password_hash_iterations),
        )
        if updated is None:
            raise InternalError("Failed to update password")

        if not current_token:
            return 0
        # 密码已修改成功，会话清理失败只记录日志。
        try:
            revoked = self.sessions.delete_all_except_one(user_id, current_token)
        except SQLAlchemyError:
            self.sessions.db.rollback()
            logger.exception("revoke other sessions after password change failed user_id=%s", user_id)
            return 0
        logger.info("password changed user_id=%s revoked_sessions=%s", user_id, revoked)
        return revoked

    def delete_account(self, user_id: UUID) -> None:
        """注销账号：依次清理会话、头像与用户记录。"""
        user = self.get_profile(user_id)

        try:
            count = self.sessions.delete_all(user_id)
            logger.debug("deleted %s sessions for user_id=%s", count, user_id)
        except SQLAlchemyError:
            self.sessions.db.rollback()
            logger.exception("delete sessions failed user_id=%s", user_id)

        if user.profile_picture:
            try:
                self.storage.delete(user.profile_picture)
            except (StorageError, OSError):
                logger.exception("delete profile picture failed user_id=%s", user_id)

        self.users.delete(user)
        logger.info("account deleted user_id=%s", user_id)

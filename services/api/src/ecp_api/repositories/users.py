"""用户凭据仓储。

所有查询未命中时返回 None，不抛出“未找到”异常；
每次写操作独立提交，保证单行读改写的原子边界由数据库承担。
"""

import logging
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ecp_api.models.user import User

logger = logging.getLogger(__name__)


def normalize_email(email: str) -> str:
    """统一邮箱格式，避免大小写导致重复账号。"""
    return email.strip().lower()


class UserRepository:
    """users 表读写。"""

    def __init__(self, db: Session) -> None:
        self.db = db

    def find_by_id(self, user_id: UUID) -> User | None:
        return self.db.get(User, user_id)

    def find_by_email(self, email: str) -> User | None:
        stmt = select(User).where(User.email == normalize_email(email))
        return self.db.execute(stmt).scalar_one_or_none()

    def find_by_username(self, username: str, *, verified_only: bool = True) -> User | None:
        """按用户名查找。

        未验证用户之间允许重名，非 verified_only 模式下优先返回已验证用户，其次最近更新的记录。
        """
        stmt = select(User).where(User.username == username.strip())
        if verified_only:
            stmt = stmt.where(User.is_verified.is_(True))
        stmt = stmt.order_by(User.is_verified.desc(), User.updated_at.desc()).limit(1)
        return self.db.execute(stmt).scalars().first()

    def find_by_verification_hash(self, verification_hash: str) -> User | None:
        stmt = select(User).where(User.verification_hash == verification_hash)
        return self.db.execute(stmt).scalars().first()

    def create(self, **fields: Any) -> User | None:
        """创建用户，唯一约束冲突时返回 None。"""
        if "email" in fields:
            fields["email"] = normalize_email(fields["email"])
        user = User(**fields)
        self.db.add(user)
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            logger.warning("create user failed email=%s error=%s", fields.get("email"), exc.orig)
            return None
        self.db.refresh(user)
        return user

    def update(self, user: User, **changes: Any) -> User | None:
        """按字段局部更新，唯一约束冲突时返回 None。"""
        if "email" in changes and changes["email"] is not None:
            changes["email"] = normalize_email(changes["email"])
        for field, value in changes.items():
            setattr(user, field, value)
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            logger.warning("update user failed id=%s error=%s", user.id, exc.orig)
            return None
        self.db.refresh(user)
        return user

    def increment_failed_attempts(self, user: User) -> int:
        """原子递增失败次数并返回递增后的值。"""
        self.db.execute(
            update(User)
            .where(User.id == user.id)
            .values(incorrect_attempt=User.incorrect_attempt + 1)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.refresh(user)
        return user.incorrect_attempt

    def delete(self, user: User) -> bool:
        self.db.delete(user)
        self.db.commit()
        return True

"""认证编排服务。

负责注册、验证码校验、登录锁定、找回密码、第三方登录、令牌刷新与登出。
核心约束：
1. 登录时锁定检查永远先于密码比对，正确口令也不能绕过锁定窗口。
2. 失败计数使用数据库原子自增，锁定期间保留触发锁定时的计数。
3. 刷新时只签发新的访问令牌，刷新令牌不轮换。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Protocol

from ecp_api.core.security import RefreshToken, TokenIssuer
from ecp_api.errors import (
    BadRequestError,
    ConflictError,
    InternalError,
    NotFoundError,
    TooManyRequestsError,
    UnauthorizedError,
)
from ecp_api.models.enums import Role
from ecp_api.models.user import User
from ecp_api.repositories.sessions import SessionRepository
from ecp_api.repositories.users import UserRepository
from ecp_api.services.email import OtpNotifier
from ecp_api.services.local_auth import (
    DEFAULT_HASH_ITERATIONS,
    generate_otp,
    hash_password,
    hash_verification_code,
    verify_password,
)
from ecp_api.services.storage import StorageError, UploadedFile
from ecp_api.utils.clock import Clock, as_utc, utc_now

logger = logging.getLogger(__name__)

PROFILE_PICTURE_FOLDER = "profile-pictures"
# 前端未拿到链接哈希时会把字面量 undefined 拼进路径。
_MISSING_HASH_LITERAL = "undefined"


class FileStorage(Protocol):
    def upload(self, file: UploadedFile, folder: str) -> str: ...

    def delete(self, url: str) -> bool: ...


@dataclass(frozen=True)
class AuthPolicy:
    """认证相关的时效与阈值。"""

    otp_ttl: timedelta = timedelta(minutes=10)
    reset_otp_ttl: timedelta = timedelta(minutes=15)
    max_failed_attempts: int = 3
    lockout: timedelta = timedelta(minutes=15)
    password_hash_iterations: int = DEFAULT_HASH_ITERATIONS
    reset_url_base: str | None = None


@dataclass(frozen=True)
class Identity:
    """用户定位方式：邮箱或用户名二选一。"""

    email: str | None = None
    username: str | None = None

    @classmethod
    def from_fields(
        cls,
        *,
        identifier: str | None = None,
        email: str | None = None,
        username: str | None = None,
    ) -> Identity:
        """由请求字段构造，identifier 含 @ 视为邮箱，否则视为用户名。"""
        supplied = [value for value in (identifier, email, username) if value and value.strip()]
        if len(supplied) != 1:
            raise BadRequestError("Exactly one of identifier, email or username is required")
        if identifier and identifier.strip():
            value = identifier.strip()
            return cls(email=value) if "@" in value else cls(username=value)
        if email and email.strip():
            return cls(email=email.strip())
        return cls(username=(username or "").strip())

    @property
    def label(self) -> str:
        return "Email" if self.email else "Username"


@dataclass(frozen=True)
class RegistrationResult:
    user: User
    is_existing: bool


@dataclass(frozen=True)
class AuthResult:
    """认证成功后的用户与令牌。刷新场景下 refresh_token 为空。"""

    user: User
    access_token: str
    refresh_token: RefreshToken | None = None


class AuthService:
    """认证编排服务。"""

    def __init__(
        self,
        *,
        users: UserRepository,
        sessions: SessionRepository,
        tokens: TokenIssuer,
        notifier: OtpNotifier,
        storage: FileStorage,
        policy: AuthPolicy | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.users = users
        self.sessions = sessions
        self.tokens = tokens
        self.notifier = notifier
        self.storage = storage
        self.policy = policy or AuthPolicy()
        self.clock = clock

    # ---- 注册与验证 ----

    def register(
        self,
        *,
        name: str,
        email: str,
        password: str,
        username: str | None = None,
        profile_image: UploadedFile | None = None,
    ) -> RegistrationResult:
        """注册新用户，或覆盖同邮箱的未验证记录（续注册）。"""
        existing = self.users.find_by_email(email)
        if existing is not None and existing.is_verified:
            raise ConflictError("Account already exists with this email")

        if username:
            holder = self.users.find_by_username(username, verified_only=True)
            if holder is not None:
                raise ConflictError("Username already taken by a verified user")

        now = self.clock()
        code = generate_otp()
        fields: dict[str, Any] = {
            "name": name,
            "username": username or None,
            "password_hash": hash_password(password, iterations=self.policy.password_hash_iterations),
            "profile_picture": None,
            "verification_code": code,
            "verification_code_expire_at": now + self.policy.otp_ttl,
            "verification_hash": None,
            "is_verified": False,
            "roles": [Role.USER.value],
            "incorrect_attempt": 0,
            "retry_timestamp": None,
        }

        previous_picture = existing.profile_picture if existing is not None else None
        if existing is not None:
            logger.info("resume registration for unverified user id=%s", existing.id)
            user = self.users.update(existing, **fields)
            if user is None:
                raise InternalError("Failed to update user")
        else:
            user = self.users.create(email=email, **fields)
            if user is None:
                # 并发注册同一邮箱时由唯一约束兜底。
                raise ConflictError("Account already exists with this email")

        # 续注册会清空头像字段，旧文件随之删除。
        if previous_picture:
            self._delete_file_quietly(previous_picture)
        if profile_image is not None:
            url = self._upload_quietly(profile_image)
            if url:
                user = self.users.update(user, profile_picture=url) or user

        self.notifier.send_otp_email(user.email, user.name, code)
        logger.info("registration completed user_id=%s resumed=%s", user.id, existing is not None)
        return RegistrationResult(user=user, is_existing=existing is not None)

    def verify(
        self,
        identity: Identity,
        code: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuthResult:
        """校验注册验证码，成功后标记已验证并建立会话。"""
        user = self._find_user(identity, verified_only=False)
        if user is None:
            raise NotFoundError("User Not Found With This Username or Email")
        if user.is_verified:
            raise BadRequestError("User Already Verified")
        self._check_code(user, code)

        verified = self.users.update(
            user,
            is_verified=True,
            verification_code=None,
            verification_code_expire_at=None,
        )
        if verified is None:
            raise InternalError("Failed to verify user")
        logger.info("user verified user_id=%s", verified.id)
        return self._start_session(verified, ip_address, user_agent)

    # ---- 登录 ----

    def login(
        self,
        identity: Identity,
        password: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuthResult:
        """口令登录，连续失败达到阈值后锁定一段时间。"""
        user = self._find_user(identity)
        if user is None:
            raise NotFoundError(f"User Not Found With This {identity.label}")
        if not user.is_verified:
            raise BadRequestError("User Not Verified")

        now = self.clock()
        self._ensure_not_locked(user, now)

        if not verify_password(password, user.password_hash):
            attempts = self.users.increment_failed_attempts(user)
            if attempts >= self.policy.max_failed_attempts:
                retry_at = now + self.policy.lockout
                self.users.update(user, retry_timestamp=retry_at)
                logger.warning("account locked after %s failed logins user_id=%s", attempts, user.id)
                raise self._locked_error(retry_at)
            raise UnauthorizedError(
                "Invalid Credentials",
                details={"remaining_attempts": self.policy.max_failed_attempts - attempts},
            )

        if user.incorrect_attempt or user.retry_timestamp is not None:
            user = self.users.update(user, incorrect_attempt=0, retry_timestamp=None) or user
        logger.info("login succeeded user_id=%s", user.id)
        return self._start_session(user, ip_address, user_agent)

    # ---- 找回密码 ----

    def forgot_password(self, identity: Identity) -> dict[str, str]:
        """生成找回密码验证码与链接哈希，并发送邮件。"""
        user = self._find_user(identity)
        if user is None:
            raise NotFoundError("User not found")
        if not user.is_verified:
            raise NotFoundError("User not Verified")

        code = generate_otp()
        verification_hash = hash_verification_code(code)
        updated = self.users.update(
            user,
            verification_code=code,
            verification_code_expire_at=self.clock() + self.policy.reset_otp_ttl,
            verification_hash=verification_hash,
            incorrect_attempt=0,
        )
        if updated is None:
            raise InternalError("Failed to update user")

        reset_link = None
        if self.policy.reset_url_base:
            reset_link = f"{self.policy.reset_url_base.rstrip('/')}/{verification_hash}"
        self.notifier.send_password_reset_email(updated.email, updated.name, code, reset_link)
        logger.info("password reset requested user_id=%s", updated.id)
        return {"message": "Reset instructions sent to email"}

    def verify_otp(self, identity: Identity, code: str) -> dict[str, bool]:
        """仅校验找回密码验证码，不修改令牌与会话。

        达到失败阈值时锁定，同时把计数归零并重新发送当前验证码。
        """
        user = self._find_user(identity)
        if user is None:
            raise NotFoundError("Invalid reset request")
        if not user.is_verified:
            raise NotFoundError("User not Verified")

        now = self.clock()
        self._ensure_not_locked(user, now)

        if user.verification_code != code:
            attempts = self.users.increment_failed_attempts(user)
            if attempts >= self.policy.max_failed_attempts:
                self.users.update(user, retry_timestamp=now + self.policy.lockout, incorrect_attempt=0)
                logger.warning("reset code locked user_id=%s", user.id)
                if user.verification_code:
                    self.notifier.send_otp_email(user.email, user.name, user.verification_code)
            raise BadRequestError("Invalid Verification Code")

        expire_at = user.verification_code_expire_at
        if expire_at is not None and now > as_utc(expire_at):
            raise BadRequestError("Verification Code Expired")
        return {"verified": True}

    def reset_password(
        self,
        reset_hash: str | None,
        identity: Identity | None,
        code: str | None,
        new_password: str,
    ) -> dict[str, str]:
        """重置密码。

        携带链接哈希时直接按哈希定位用户，不再校验验证码；
        否则按身份与验证码重新校验。两条路径都清空验证与锁定状态，但不吊销已有会话。
        """
        if reset_hash and reset_hash != _MISSING_HASH_LITERAL:
            user = self.users.find_by_verification_hash(reset_hash)
            if user is None:
                raise NotFoundError("Invalid reset request")
        else:
            if identity is None:
                raise BadRequestError("Username or Email is required")
            user = self._find_user(identity)
            if user is None:
                raise NotFoundError("User not found")
            if not user.is_verified:
                raise NotFoundError("User not Verified")
            self._check_code(user, code)

        updated = self.users.update(
            user,
            password_hash=hash_password(new_password, iterations=self.policy.password_hash_iterations),
            verification_code=None,
            verification_code_expire_at=None,
            verification_hash=None,
            incorrect_attempt=0,
            retry_timestamp=None,
        )
        if updated is None:
            raise InternalError("Failed to reset password")
        logger.info("password reset succeeded user_id=%s", updated.id)
        return {"message": "Password reset successful"}

    # ---- 第三方登录、刷新与登出 ----

    def handle_oauth_login(
        self,
        user: User,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuthResult:
        """第三方身份已确认，直接签发令牌并建立会话。"""
        return self._start_session(user, ip_address, user_agent)

    def refresh_token(
        self,
        token: str | None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuthResult:
        """凭刷新令牌换取新的访问令牌。"""
        session = self.sessions.find_by_token(token) if token else None
        if session is None:
            raise UnauthorizedError("Invalid Session")

        if self.clock() > as_utc(session.expires_at):
            self.sessions.delete(session.id)
            logger.info("expired session removed session_id=%s", session.id)
            raise UnauthorizedError("Refresh token expired")

        user = self.users.find_by_id(session.user_id)
        if user is None:
            raise UnauthorizedError("Invalid Session")
        logger.debug("access token refreshed user_id=%s ip=%s ua=%s", user.id, ip_address, user_agent)
        return AuthResult(user=user, access_token=self.tokens.create_access_token(user))

    def logout(self, token: str | None) -> bool:
        """删除刷新令牌对应的会话，会话不存在也视为成功。"""
        if not token:
            return True
        session = self.sessions.find_by_token(token)
        if session is not None:
            self.sessions.delete(session.id)
            logger.info("session logged out session_id=%s", session.id)
        return True

    # ---- 内部工具 ----

    def _find_user(self, identity: Identity, *, verified_only: bool = True) -> User | None:
        if identity.email:
            return self.users.find_by_email(identity.email)
        if identity.username:
            return self.users.find_by_username(identity.username, verified_only=verified_only)
        return None

    def _check_code(self, user: User, code: str | None) -> None:
        if not user.verification_code or user.verification_code_expire_at is None:
            raise BadRequestError("Verification code not found or expired")
        if user.verification_code != code:
            raise BadRequestError("Invalid Verification Code")
        if self.clock() > as_utc(user.verification_code_expire_at):
            raise BadRequestError("Verification Code Expired")

    def _ensure_not_locked(self, user: User, now: datetime) -> None:
        if user.retry_timestamp is None:
            return
        retry_at = as_utc(user.retry_timestamp)
        if now < retry_at:
            logger.debug("rejecting attempt for locked account user_id=%s", user.id)
            raise self._locked_error(retry_at)

    @staticmethod
    def _locked_error(retry_at: datetime) -> TooManyRequestsError:
        return TooManyRequestsError(
            f"Account is temporarily locked. Please try again after {retry_at.isoformat()}",
            details={"retry_at": retry_at.isoformat()},
        )

    def _start_session(self, user: User, ip_address: str | None, user_agent: str | None) -> AuthResult:
        access_token = self.tokens.create_access_token(user)
        refresh = self.tokens.create_refresh_token(user.id)
        session = self.sessions.create(
            user_id=user.id,
            token=refresh.token,
            expires_at=refresh.expires_at,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        if session is None:
            raise InternalError("Failed to create session")
        return AuthResult(user=user, access_token=access_token, refresh_token=refresh)

    def _upload_quietly(self, file: UploadedFile) -> str | None:
        try:
            return self.storage.upload(file, PROFILE_PICTURE_FOLDER)
        except (StorageError, OSError):
            logger.exception("profile picture upload failed filename=%s", file.filename)
            return None

    def _delete_file_quietly(self, url: str) -> None:
        try:
            self.storage.delete(url)
        except (StorageError, OSError):
            logger.exception("delete previous file failed url=%s", url)

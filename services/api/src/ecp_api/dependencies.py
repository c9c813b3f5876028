"""请求级依赖装配。

职责:
1. 由配置构造各服务所需的策略对象与协作方。
2. 为每个请求组装独立的服务实例，服务之间不共享可变状态。
3. 解析访问令牌并映射为当前用户。
"""

from datetime import timedelta
from uuid import UUID

from fastapi import BackgroundTasks, Cookie, Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from ecp_api.core.config import Settings, get_settings
from ecp_api.core.security import TokenIssuer, extract_bearer_token
from ecp_api.db.session import get_db
from ecp_api.errors import UnauthorizedError
from ecp_api.models.user import User
from ecp_api.repositories import SessionRepository, UserRepository
from ecp_api.services.auth import AuthPolicy, AuthService
from ecp_api.services.email import BackgroundOtpNotifier, EmailSender, OtpNotifier
from ecp_api.services.oauth import OAuthClient, OAuthCredentials
from ecp_api.services.sessions import SessionManager
from ecp_api.services.storage import LocalFileStorage
from ecp_api.services.users import AccountService
from ecp_api.utils.clock import Clock, utc_now
from ecp_api.utils.cookies import ACCESS_TOKEN_COOKIE, REFRESH_TOKEN_COOKIE, CookiePolicy

bearer_scheme = HTTPBearer(auto_error=False)


def build_token_issuer(settings: Settings) -> TokenIssuer:
    """按配置构造令牌签发器，密钥缺失时抛出 RuntimeError。"""
    return TokenIssuer(
        access_secret=settings.jwt_access_secret,
        refresh_secret=settings.jwt_refresh_secret,
        algorithm=settings.jwt_algorithm,
        access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
        refresh_ttl_months=settings.refresh_token_ttl_months,
    )


def get_token_issuer(request: Request) -> TokenIssuer:
    """返回应用启动时构造的签发器。"""
    return request.app.state.token_issuer


def get_clock() -> Clock:
    return utc_now


def get_auth_policy(settings: Settings = Depends(get_settings)) -> AuthPolicy:
    return AuthPolicy(
        otp_ttl=timedelta(minutes=settings.otp_ttl_minutes),
        reset_otp_ttl=timedelta(minutes=settings.reset_otp_ttl_minutes),
        max_failed_attempts=settings.max_failed_attempts,
        lockout=timedelta(minutes=settings.lockout_minutes),
        password_hash_iterations=settings.password_hash_iterations,
        reset_url_base=settings.password_reset_url,
    )


def get_cookie_policy(settings: Settings = Depends(get_settings)) -> CookiePolicy:
    return CookiePolicy.from_settings(settings)


def get_file_storage(settings: Settings = Depends(get_settings)) -> LocalFileStorage:
    return LocalFileStorage(settings.storage_root, settings.storage_public_url, settings.max_upload_bytes)


def get_email_sender(settings: Settings = Depends(get_settings)) -> EmailSender:
    return EmailSender(
        smtp_host=settings.smtp_host,
        smtp_port=settings.smtp_port,
        smtp_user=settings.smtp_user,
        smtp_password=settings.smtp_password,
        use_tls=settings.smtp_use_tls,
        start_tls=settings.smtp_start_tls,
        from_email=settings.smtp_from_email,
        from_name=settings.smtp_from_name,
        max_attempts=settings.email_max_attempts,
        retry_base_seconds=settings.email_retry_base_seconds,
        otp_ttl_minutes=settings.otp_ttl_minutes,
    )


def get_notifier(
    background_tasks: BackgroundTasks,
    sender: EmailSender = Depends(get_email_sender),
) -> OtpNotifier:
    """邮件在响应返回后由后台任务发送。"""
    return BackgroundOtpNotifier(sender, background_tasks)


def get_oauth_client(settings: Settings = Depends(get_settings)) -> OAuthClient:
    credentials: dict[str, OAuthCredentials] = {}
    if settings.oauth_google_client_id and settings.oauth_google_client_secret and settings.oauth_google_redirect_uri:
        credentials["google"] = OAuthCredentials(
            client_id=settings.oauth_google_client_id,
            client_secret=settings.oauth_google_client_secret,
            redirect_uri=settings.oauth_google_redirect_uri,
        )
    if settings.oauth_github_client_id and settings.oauth_github_client_secret and settings.oauth_github_redirect_uri:
        credentials["github"] = OAuthCredentials(
            client_id=settings.oauth_github_client_id,
            client_secret=settings.oauth_github_client_secret,
            redirect_uri=settings.oauth_github_redirect_uri,
        )
    return OAuthClient(credentials, timeout=settings.oauth_http_timeout_seconds)


def get_auth_service(
    db: Session = Depends(get_db),
    tokens: TokenIssuer = Depends(get_token_issuer),
    notifier: OtpNotifier = Depends(get_notifier),
    storage: LocalFileStorage = Depends(get_file_storage),
    policy: AuthPolicy = Depends(get_auth_policy),
    clock: Clock = Depends(get_clock),
) -> AuthService:
    return AuthService(
        users=UserRepository(db),
        sessions=SessionRepository(db),
        tokens=tokens,
        notifier=notifier,
        storage=storage,
        policy=policy,
        clock=clock,
    )


def get_session_manager(db: Session = Depends(get_db)) -> SessionManager:
    return SessionManager(SessionRepository(db))


def get_account_service(
    db: Session = Depends(get_db),
    storage: LocalFileStorage = Depends(get_file_storage),
    settings: Settings = Depends(get_settings),
) -> AccountService:
    return AccountService(
        users=UserRepository(db),
        sessions=SessionRepository(db),
        storage=storage,
        password_hash_iterations=settings.password_hash_iterations,
    )


def get_refresh_token(refresh_token: str | None = Cookie(default=None, alias=REFRESH_TOKEN_COOKIE)) -> str | None:
    """从 httpOnly Cookie 中读取刷新令牌。"""
    return refresh_token or None


def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    tokens: TokenIssuer = Depends(get_token_issuer),
    db: Session = Depends(get_db),
) -> User:
    """解析访问令牌并返回当前用户，Cookie 优先，其次 Authorization 头。"""
    token = request.cookies.get(ACCESS_TOKEN_COOKIE)
    if not token:
        token = extract_bearer_token(request.headers.get("authorization"))
    if not token and credentials is not None:
        token = credentials.credentials
    if not token:
        raise UnauthorizedError("Access token is required")

    claims = tokens.validate_access_token(token)
    if claims is None:
        raise UnauthorizedError("Invalid or expired access token")

    try:
        user_id = UUID(str(claims["id"]))
    except (KeyError, ValueError) as exc:
        raise UnauthorizedError("Invalid or expired access token") from exc

    user = UserRepository(db).find_by_id(user_id)
    if user is None:
        raise UnauthorizedError("User not found")
    return user

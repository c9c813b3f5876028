"""认证接口：注册、验证、登录、找回密码、第三方登录、刷新与登出。"""

import secrets

from fastapi import APIRouter, Cookie, Depends, File, Form, Query, Request, Response, UploadFile, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import RedirectResponse
from pydantic import ValidationError

from ecp_api.dependencies import (
    get_auth_service,
    get_cookie_policy,
    get_current_user,
    get_oauth_client,
    get_refresh_token,
)
from ecp_api.errors import InternalError, NotFoundError, UnauthorizedError
from ecp_api.models.enums import OAuthProviderName
from ecp_api.models.user import User
from ecp_api.schemas.auth import (
    AuthTokenData,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutData,
    RegisterRequest,
    ResetPasswordRequest,
    VerifiedData,
    VerifyCodeRequest,
)
from ecp_api.schemas.common import ErrorResponse, MessageData, SuccessResponse
from ecp_api.schemas.user import UserPublic, to_user_public
from ecp_api.services.auth import AuthResult, AuthService, Identity
from ecp_api.services.oauth import OAuthClient, provision_oauth_user
from ecp_api.services.storage import UploadedFile
from ecp_api.utils.cookies import (
    OAUTH_STATE_COOKIE,
    CookiePolicy,
    clear_auth_cookies,
    clear_oauth_state_cookie,
    set_auth_cookies,
    set_oauth_state_cookie,
)
from ecp_api.utils.request import client_ip, user_agent
from ecp_api.utils.response import success

router = APIRouter(prefix="/auth", tags=["auth"])


def _register_form(
    name: str = Form(..., description="姓名。"),
    email: str = Form(..., description="登录邮箱。"),
    password: str = Form(..., description="登录密码。"),
    username: str | None = Form(default=None, description="用户名（可选）。"),
) -> RegisterRequest:
    """把表单字段收敛为注册请求模型，校验失败按 422 返回。"""
    try:
        return RegisterRequest(name=name, email=email, password=password, username=username or None)
    except ValidationError as exc:
        raise RequestValidationError(exc.errors(include_url=False, include_context=False)) from exc


def _read_upload(file: UploadFile | None) -> UploadedFile | None:
    if file is None or not file.filename:
        return None
    return UploadedFile(filename=file.filename, content_type=file.content_type, content=file.file.read())


def _auth_payload(request: Request, response: Response, result: AuthResult, service: AuthService, policy: CookiePolicy):
    set_auth_cookies(
        response,
        policy,
        access_token=result.access_token,
        refresh_token=result.refresh_token.token if result.refresh_token else None,
    )
    return success(
        request,
        {
            "user": to_user_public(result.user),
            "access_token": result.access_token,
            "token_type": "bearer",
            "expires_in": int(service.tokens.access_ttl.total_seconds()),
        },
    )


@router.post(
    "/register",
    summary="注册账号",
    description="以 multipart 表单提交注册信息与可选头像。新建返回 201，覆盖未验证账号返回 200。",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessResponse[UserPublic],
    responses={200: {"model": SuccessResponse[UserPublic]}, 409: {"model": ErrorResponse}},
)
def register(
    request: Request,
    response: Response,
    payload: RegisterRequest = Depends(_register_form),
    profile_picture: UploadFile | None = File(default=None, description="头像图片（可选）。"),
    service: AuthService = Depends(get_auth_service),
):
    """注册或续注册，验证码通过邮件发送。"""
    result = service.register(
        name=payload.name,
        email=payload.email,
        password=payload.password,
        username=payload.username,
        profile_image=_read_upload(profile_picture),
    )
    if result.is_existing:
        response.status_code = status.HTTP_200_OK
    return success(request, to_user_public(result.user))


@router.post(
    "/verify-user",
    summary="验证注册验证码",
    description="校验通过后标记账号已验证，并写入认证 Cookie。",
    response_model=SuccessResponse[AuthTokenData],
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
def verify_user(
    payload: VerifyCodeRequest,
    request: Request,
    response: Response,
    service: AuthService = Depends(get_auth_service),
    policy: CookiePolicy = Depends(get_cookie_policy),
):
    result = service.verify(
        Identity.from_fields(**payload.identity_fields()),
        payload.verification_code,
        client_ip(request),
        user_agent(request),
    )
    return _auth_payload(request, response, result, service, policy)


@router.post(
    "/login",
    summary="口令登录",
    description="支持邮箱、用户名或通用标识登录。连续失败 3 次后锁定 15 分钟。",
    response_model=SuccessResponse[AuthTokenData],
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        429: {"model": ErrorResponse},
    },
)
def login(
    payload: LoginRequest,
    request: Request,
    response: Response,
    service: AuthService = Depends(get_auth_service),
    policy: CookiePolicy = Depends(get_cookie_policy),
):
    result = service.login(
        Identity.from_fields(**payload.identity_fields()),
        payload.password,
        client_ip(request),
        user_agent(request),
    )
    return _auth_payload(request, response, result, service, policy)


@router.post(
    "/refresh-token",
    summary="刷新访问令牌",
    description="读取 refresh_token Cookie 换取新的访问令牌，刷新令牌本身不轮换。",
    response_model=SuccessResponse[AuthTokenData],
    responses={401: {"model": ErrorResponse}},
)
def refresh_token(
    request: Request,
    response: Response,
    token: str | None = Depends(get_refresh_token),
    service: AuthService = Depends(get_auth_service),
    policy: CookiePolicy = Depends(get_cookie_policy),
):
    if not token:
        raise UnauthorizedError("Refresh token is required")
    result = service.refresh_token(token, client_ip(request), user_agent(request))
    return _auth_payload(request, response, result, service, policy)


@router.post(
    "/forgot-password",
    summary="申请重置密码",
    description="向已验证账号发送重置验证码与重置链接。",
    response_model=SuccessResponse[MessageData],
    responses={404: {"model": ErrorResponse}},
)
def forgot_password(
    payload: ForgotPasswordRequest,
    request: Request,
    service: AuthService = Depends(get_auth_service),
):
    data = service.forgot_password(Identity.from_fields(**payload.identity_fields()))
    return success(request, data)


@router.post(
    "/verify-verification-code",
    summary="校验重置验证码",
    description="仅校验验证码，不修改密码与会话。",
    response_model=SuccessResponse[VerifiedData],
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}, 429: {"model": ErrorResponse}},
)
def verify_verification_code(
    payload: VerifyCodeRequest,
    request: Request,
    service: AuthService = Depends(get_auth_service),
):
    data = service.verify_otp(Identity.from_fields(**payload.identity_fields()), payload.verification_code)
    return success(request, data)


def _reset_password(reset_hash: str | None, payload: ResetPasswordRequest, service: AuthService) -> dict:
    identity = None
    if any(payload.identity_fields().values()):
        identity = Identity.from_fields(**payload.identity_fields())
    return service.reset_password(reset_hash, identity, payload.verification_code, payload.password)


@router.post(
    "/reset-password",
    summary="凭验证码重置密码",
    response_model=SuccessResponse[MessageData],
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
def reset_password(
    payload: ResetPasswordRequest,
    request: Request,
    service: AuthService = Depends(get_auth_service),
):
    return success(request, _reset_password(None, payload, service))


@router.post(
    "/reset-password/{reset_hash}",
    summary="凭邮件链接重置密码",
    description="链接中的哈希有效时无需再次提交验证码。",
    response_model=SuccessResponse[MessageData],
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
def reset_password_with_hash(
    reset_hash: str,
    payload: ResetPasswordRequest,
    request: Request,
    service: AuthService = Depends(get_auth_service),
):
    return success(request, _reset_password(reset_hash, payload, service))


@router.post(
    "/logout",
    summary="登出",
    description="删除当前刷新令牌对应的会话并清除认证 Cookie，会话不存在时同样成功。",
    response_model=SuccessResponse[LogoutData],
)
def logout(
    request: Request,
    response: Response,
    token: str | None = Depends(get_refresh_token),
    service: AuthService = Depends(get_auth_service),
    policy: CookiePolicy = Depends(get_cookie_policy),
):
    service.logout(token)
    clear_auth_cookies(response, policy)
    return success(request, {"logged_out": True})


@router.get(
    "/me",
    summary="获取当前身份",
    response_model=SuccessResponse[UserPublic],
    responses={401: {"model": ErrorResponse}},
)
def me(request: Request, current_user: User = Depends(get_current_user)):
    return success(request, to_user_public(current_user))


# ---- 第三方登录 ----


def _start_oauth(provider: str, client: OAuthClient, policy: CookiePolicy) -> RedirectResponse:
    if not client.is_configured(provider):
        raise NotFoundError(f"OAuth provider {provider} is not configured")
    state = secrets.token_urlsafe(24)
    redirect = RedirectResponse(client.authorization_url(provider, state), status_code=status.HTTP_307_TEMPORARY_REDIRECT)
    set_oauth_state_cookie(redirect, policy, state)
    return redirect


def _finish_oauth(
    provider: str,
    *,
    request: Request,
    response: Response,
    code: str | None,
    state: str | None,
    expected_state: str | None,
    error: str | None,
    client: OAuthClient,
    service: AuthService,
    policy: CookiePolicy,
):
    if not client.is_configured(provider):
        raise NotFoundError(f"OAuth provider {provider} is not configured")
    if error or not code:
        raise UnauthorizedError(f"Failed to authenticate with {provider}", details={"provider_error": error})
    if not state or not expected_state or not secrets.compare_digest(state, expected_state):
        raise UnauthorizedError("Invalid OAuth state")

    identity = client.exchange_code(provider, code)
    if identity is None:
        raise UnauthorizedError(f"Failed to authenticate with {provider}")
    user = provision_oauth_user(
        service.users,
        identity,
        password_hash_iterations=service.policy.password_hash_iterations,
    )
    if user is None:
        raise InternalError("Failed to create user")

    result = service.handle_oauth_login(user, client_ip(request), user_agent(request))
    clear_oauth_state_cookie(response, policy)
    return _auth_payload(request, response, result, service, policy)


@router.get(
    "/google",
    summary="跳转 Google 授权",
    response_class=RedirectResponse,
    status_code=status.HTTP_307_TEMPORARY_REDIRECT,
    responses={404: {"model": ErrorResponse}},
)
def google_login(
    client: OAuthClient = Depends(get_oauth_client),
    policy: CookiePolicy = Depends(get_cookie_policy),
):
    return _start_oauth(OAuthProviderName.GOOGLE, client, policy)


@router.get(
    "/github",
    summary="跳转 GitHub 授权",
    response_class=RedirectResponse,
    status_code=status.HTTP_307_TEMPORARY_REDIRECT,
    responses={404: {"model": ErrorResponse}},
)
def github_login(
    client: OAuthClient = Depends(get_oauth_client),
    policy: CookiePolicy = Depends(get_cookie_policy),
):
    return _start_oauth(OAuthProviderName.GITHUB, client, policy)


@router.get(
    "/google/callback",
    summary="Google 授权回调",
    response_model=SuccessResponse[AuthTokenData],
    responses={401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
def google_callback(
    request: Request,
    response: Response,
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    expected_state: str | None = Cookie(default=None, alias=OAUTH_STATE_COOKIE),
    client: OAuthClient = Depends(get_oauth_client),
    service: AuthService = Depends(get_auth_service),
    policy: CookiePolicy = Depends(get_cookie_policy),
):
    return _finish_oauth(
        OAuthProviderName.GOOGLE,
        request=request,
        response=response,
        code=code,
        state=state,
        expected_state=expected_state,
        error=error,
        client=client,
        service=service,
        policy=policy,
    )


@router.get(
    "/github/callback",
    summary="GitHub 授权回调",
    response_model=SuccessResponse[AuthTokenData],
    responses={401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
def github_callback(
    request: Request,
    response: Response,
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    expected_state: str | None = Cookie(default=None, alias=OAUTH_STATE_COOKIE),
    client: OAuthClient = Depends(get_oauth_client),
    service: AuthService = Depends(get_auth_service),
    policy: CookiePolicy = Depends(get_cookie_policy),
):
    return _finish_oauth(
        OAuthProviderName.GITHUB,
        request=request,
        response=response,
        code=code,
        state=state,
        expected_state=expected_state,
        error=error,
        client=client,
        service=service,
        policy=policy,
    )

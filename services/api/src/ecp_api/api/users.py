"""当前账号管理接口。"""

from fastapi import APIRouter, Depends, Request, Response

from ecp_api.dependencies import get_account_service, get_cookie_policy, get_current_user, get_refresh_token
from ecp_api.models.user import User
from ecp_api.schemas.auth import ChangePasswordRequest
from ecp_api.schemas.common import ErrorResponse, SuccessResponse
from ecp_api.schemas.user import AccountDeletedData, PasswordChangedData, UserPublic, to_user_public
from ecp_api.services.users import AccountService
from ecp_api.utils.cookies import CookiePolicy, clear_auth_cookies
from ecp_api.utils.response import success

router = APIRouter(prefix="/users", tags=["users"])


@router.get(
    "/me",
    summary="查询个人资料",
    response_model=SuccessResponse[UserPublic],
    responses={401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
def get_profile(
    request: Request,
    current_user: User = Depends(get_current_user),
    service: AccountService = Depends(get_account_service),
):
    user = service.get_profile(current_user.id)
    return success(request, to_user_public(user))


@router.post(
    "/change-password",
    summary="修改密码",
    description="修改成功后吊销当前会话以外的所有会话。",
    response_model=SuccessResponse[PasswordChangedData],
    responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}},
)
def change_password(
    payload: ChangePasswordRequest,
    request: Request,
    current_user: User = Depends(get_current_user),
    token: str | None = Depends(get_refresh_token),
    service: AccountService = Depends(get_account_service),
):
    revoked = service.change_password(
        current_user.id,
        current_password=payload.current_password,
        new_password=payload.new_password,
        confirm_password=payload.confirm_password,
        current_token=token,
    )
    return success(request, {"changed": True, "revoked_sessions": revoked})


@router.delete(
    "/me",
    summary="注销账号",
    description="删除账号、全部会话与头像，并清除认证 Cookie。",
    response_model=SuccessResponse[AccountDeletedData],
    responses={401: {"model": ErrorResponse}},
)
def delete_account(
    request: Request,
    response: Response,
    current_user: User = Depends(get_current_user),
    service: AccountService = Depends(get_account_service),
    policy: CookiePolicy = Depends(get_cookie_policy),
):
    service.delete_account(current_user.id)
    clear_auth_cookies(response, policy)
    return success(request, {"deleted": True})

"""会话管理接口。"""

from uuid import UUID

from fastapi import APIRouter, Depends, Request

from ecp_api.dependencies import get_current_user, get_refresh_token, get_session_manager
from ecp_api.models.user import User
from ecp_api.schemas.common import ErrorResponse, SuccessResponse
from ecp_api.schemas.session import SessionDeleteData, SessionRevokeData, SessionView
from ecp_api.services.sessions import SessionManager
from ecp_api.utils.response import success

router = APIRouter(prefix="/sessions", tags=["sessions"])


@router.get(
    "",
    summary="查询登录会话",
    description="返回当前用户在所有设备上的会话，并标记当前会话。",
    response_model=SuccessResponse[list[SessionView]],
    responses={401: {"model": ErrorResponse}},
)
def list_sessions(
    request: Request,
    current_user: User = Depends(get_current_user),
    token: str | None = Depends(get_refresh_token),
    manager: SessionManager = Depends(get_session_manager),
):
    sessions = manager.list_sessions(current_user.id, token)
    return success(
        request,
        [item.model_dump(mode="json") for item in sessions],
        meta={"total": len(sessions)},
    )


@router.delete(
    "",
    summary="退出其他设备",
    description="删除当前会话以外的全部会话。",
    response_model=SuccessResponse[SessionRevokeData],
    responses={401: {"model": ErrorResponse}, 403: {"model": ErrorResponse}},
)
def delete_other_sessions(
    request: Request,
    current_user: User = Depends(get_current_user),
    token: str | None = Depends(get_refresh_token),
    manager: SessionManager = Depends(get_session_manager),
):
    count = manager.delete_all_except_current(current_user.id, token)
    return success(request, {"count": count})


@router.delete(
    "/{session_id}",
    summary="删除指定会话",
    description="不能删除当前会话，当前会话请使用登出接口。",
    response_model=SuccessResponse[SessionDeleteData],
    responses={401: {"model": ErrorResponse}, 403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
def delete_session(
    session_id: UUID,
    request: Request,
    current_user: User = Depends(get_current_user),
    token: str | None = Depends(get_refresh_token),
    manager: SessionManager = Depends(get_session_manager),
):
    manager.delete_one(current_user.id, session_id, token)
    return success(request, {"session_id": session_id, "deleted": True})

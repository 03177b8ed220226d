from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.dependencies import get_current_user, require_admin
from app.core.errors import NotFoundError
from app.db.session import get_session
from app.models.returns import ReturnStatus
from app.models.user import User, UserRole
from app.schemas.returns import ReturnRequestCreate, ReturnRequestRead, ReturnRequestUpdate
from app.services import returns as returns_service

router = APIRouter(prefix="/returns", tags=["returns"])


@router.post("", response_model=ReturnRequestRead, status_code=status.HTTP_201_CREATED)
async def create_return_request(
    payload: ReturnRequestCreate,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    return await returns_service.create_return_request_for_user(
        session,
        order_id=payload.order_id,
        reason=payload.reason,
        user=current_user,
        background_tasks=background_tasks,
    )


@router.get("", response_model=list[ReturnRequestRead])
async def list_my_returns(
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    return await returns_service.list_returns_for_user(session, current_user.id)


@router.get("/all", response_model=list[ReturnRequestRead])
async def admin_list_returns(
    status_filter: ReturnStatus | None = Query(default=None, alias="status"),
    order_id: UUID | None = Query(default=None),
    session: AsyncSession = Depends(get_session),
    _: User = Depends(require_admin),
):
    return await returns_service.list_return_requests(session, status_filter=status_filter, order_id=order_id)


@router.get("/{return_id}", response_model=ReturnRequestRead)
async def get_return(
    return_id: UUID,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    record = await returns_service.require_return_request(session, return_id)
    if record.user_id != current_user.id and current_user.role != UserRole.admin:
        raise NotFoundError("Return request not found")
    return record


@router.put("/{return_id}", response_model=ReturnRequestRead)
async def admin_update_return(
    return_id: UUID,
    payload: ReturnRequestUpdate,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
    _: User = Depends(require_admin),
):
    record = await returns_service.require_return_request(session, return_id)
    return await returns_service.update_return_request(
        session,
        record=record,
        status=payload.status,
        admin_notes=payload.admin_notes,
        refund_amount=payload.refund_amount,
        background_tasks=background_tasks,
    )


@router.delete("/{return_id}", status_code=status.HTTP_204_NO_CONTENT)
async def admin_delete_return(
    return_id: UUID,
    session: AsyncSession = Depends(get_session),
    _: User = Depends(require_admin),
) -> Response:
    record = await returns_service.require_return_request(session, return_id)
    await returns_service.delete_return_request(session, record)
    return Response(status_code=status.HTTP_204_NO_CONTENT)

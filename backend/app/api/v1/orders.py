from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.dependencies import get_current_user, require_admin
from app.core.errors import NotFoundError
from app.db.session import get_session
from app.models.order import OrderStatus, PaymentStatus
from app.models.user import User
from app.schemas.order import OrderCreate, OrderRead, OrderStatusUpdate
from app.services import order as order_service

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("", response_model=OrderRead, status_code=status.HTTP_201_CREATED)
async def create_order(
    payload: OrderCreate,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    return await order_service.create_order_from_cart(session, current_user, payload.shipping_address.to_address())


@router.get("", response_model=list[OrderRead])
async def list_my_orders(
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    return await order_service.get_orders_for_user(session, current_user.id)


@router.get("/admin", response_model=list[OrderRead])
async def admin_list_orders(
    order_status: OrderStatus | None = Query(default=None),
    payment_status: PaymentStatus | None = Query(default=None),
    session: AsyncSession = Depends(get_session),
    _: User = Depends(require_admin),
):
    return await order_service.list_orders(session, order_status=order_status, payment_status=payment_status)


@router.get("/{order_id}", response_model=OrderRead)
async def get_order(
    order_id: UUID,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    return await order_service.require_order_for_user(session, current_user.id, order_id)


@router.delete("/{order_id}", response_model=OrderRead)
async def cancel_order(
    order_id: UUID,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    order = await order_service.require_order_for_user(session, current_user.id, order_id)
    return await order_service.cancel_order(session, order)


@router.put("/{order_id}", response_model=OrderRead)
async def admin_update_order(
    order_id: UUID,
    payload: OrderStatusUpdate,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
    _: User = Depends(require_admin),
):
    order = await order_service.get_order_by_id(session, order_id)
    if not order:
        raise NotFoundError("Order not found")
    return await order_service.update_order_status(
        session,
        order,
        order_status=payload.order_status,
        payment_status=payload.payment_status,
        background_tasks=background_tasks,
    )

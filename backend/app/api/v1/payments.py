from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.dependencies import get_current_user, require_admin
from app.db.session import get_session
from app.models.user import User
from app.schemas.order import OrderRead
from app.schemas.payment import (
    PaymentBreakdownRead,
    PaymentConfirmRequest,
    PaymentIntentCreate,
    PaymentIntentResponse,
    WebhookAck,
)
from app.services import payments
from app.services.gateways import PaymentMethod

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/create", response_model=PaymentIntentResponse)
async def create_payment_intent(
    payload: PaymentIntentCreate,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    order, intent, breakdown = await payments.create_payment_intent(
        session, user=current_user, order_id=payload.order_id, method=payload.payment_method
    )
    return PaymentIntentResponse(
        order_id=order.id,
        payment_method=payload.payment_method,
        reference=intent.reference,
        gateway=intent.payload,
        breakdown=PaymentBreakdownRead.model_validate(breakdown),
    )


@router.post("/confirm", response_model=OrderRead)
async def confirm_payment(
    payload: PaymentConfirmRequest,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    return await payments.confirm_payment(
        session,
        order_id=payload.order_id,
        reference=payload.payment_intent_id,
        method=payload.payment_method,
        user=current_user,
    )


@router.post("/webhook", response_model=WebhookAck, status_code=status.HTTP_200_OK)
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
) -> WebhookAck:
    payload = await request.body()
    await payments.handle_webhook(session, PaymentMethod.stripe, payload, request.headers, background_tasks)
    return WebhookAck(received=True)


@router.post("/webhook/razorpay", response_model=WebhookAck, status_code=status.HTTP_200_OK)
async def razorpay_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
) -> WebhookAck:
    payload = await request.body()
    await payments.handle_webhook(session, PaymentMethod.razorpay, payload, request.headers, background_tasks)
    return WebhookAck(received=True)


@router.get("/reminders", response_model=list[OrderRead])
async def list_payment_reminders(
    session: AsyncSession = Depends(get_session),
    _: User = Depends(require_admin),
):
    return await payments.list_payment_reminders(session)


@router.post("/reminder/{order_id}", response_model=OrderRead)
async def send_payment_reminder(
    order_id: UUID,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
    _: User = Depends(require_admin),
):
    return await payments.send_payment_reminder(session, order_id, background_tasks)

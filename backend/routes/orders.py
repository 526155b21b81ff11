"""
Order endpoints — specialist readiness answers and payment confirmation.
"""

import logging
from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from deps import change_feed, notification_sink
from domain.responses import money, success_response
from services import payment_service, readiness_service
from services.change_feed import ChangeFeed
from services.notification_service import NotificationSink
from services.order_service import get_order

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/orders", tags=["orders"])


class ReadinessAnswerRequest(BaseModel):
    specialist_id: int | None = Field(default=None, alias="specialistId", gt=0)

    model_config = {"populate_by_name": True}


class NotReadyRequest(ReadinessAnswerRequest):
    reason: str = Field(..., max_length=1000)


class PaymentConfirmationRequest(BaseModel):
    amount_matches: bool = Field(..., alias="amountMatches")
    amount_received: Decimal | None = Field(default=None, alias="amountReceived")
    cause: str | None = Field(default=None, max_length=20)
    note: str | None = Field(default=None, max_length=2000)
    invoice_amount: Decimal | None = Field(default=None, alias="invoiceAmount")

    model_config = {"populate_by_name": True}


# ── Readiness ───────────────────────────────────────────────────────


@router.get("/{order_id}/readiness")
async def get_readiness(order_id: int, db: AsyncSession = Depends(get_db)):
    order = await get_order(db, order_id)
    return success_response(data=readiness_service.readiness_snapshot(order))


@router.post("/{order_id}/readiness/view")
async def record_readiness_view(
    order_id: int,
    db: AsyncSession = Depends(get_db),
    feed: ChangeFeed = Depends(change_feed),
):
    stamped = await readiness_service.record_readiness_view(db, order_id, feed=feed)
    return success_response(data={"order_id": order_id, "stamped": stamped})


@router.post("/{order_id}/readiness/ready")
async def confirm_ready(
    order_id: int,
    request: ReadinessAnswerRequest | None = None,
    db: AsyncSession = Depends(get_db),
    feed: ChangeFeed = Depends(change_feed),
):
    order = await readiness_service.confirm_ready(
        db,
        order_id,
        specialist_id=request.specialist_id if request else None,
        feed=feed,
    )
    return success_response(data=readiness_service.readiness_snapshot(order))


@router.post("/{order_id}/readiness/not-ready")
async def confirm_not_ready(
    order_id: int,
    request: NotReadyRequest,
    db: AsyncSession = Depends(get_db),
    feed: ChangeFeed = Depends(change_feed),
):
    order = await readiness_service.confirm_not_ready(
        db,
        order_id,
        request.reason,
        specialist_id=request.specialist_id,
        feed=feed,
    )
    return success_response(data=readiness_service.readiness_snapshot(order))


# ── Payment ─────────────────────────────────────────────────────────


@router.post("/{order_id}/payment-confirmation")
async def confirm_payment(
    order_id: int,
    request: PaymentConfirmationRequest,
    db: AsyncSession = Depends(get_db),
    sink: NotificationSink = Depends(notification_sink),
    feed: ChangeFeed = Depends(change_feed),
):
    result = await payment_service.confirm_payment(
        db,
        order_id,
        amount_matches=request.amount_matches,
        amount_received=request.amount_received,
        cause=request.cause,
        note=request.note,
        invoice_amount=request.invoice_amount,
        sink=sink,
        feed=feed,
    )
    confirmation = result["confirmation"]
    order = result["order"]
    entry = result["wallet_transaction"]

    return success_response(
        data={
            "order_id": order.id,
            "payment_status": order.payment_status,
            "payment_confirmed_at": order.payment_confirmed_at.isoformat() if order.payment_confirmed_at else None,
            "confirmation": {
                "id": confirmation.id,
                "invoice_amount": money(confirmation.invoice_amount),
                "amount_received": money(confirmation.amount_received),
                "difference_amount": money(confirmation.difference_amount),
                "difference_cause": confirmation.difference_cause,
                "notes": confirmation.notes,
            },
            "wallet_transaction": (
                {
                    "id": entry.id,
                    "amount": money(entry.amount),
                    "balance_after": money(entry.balance_after),
                }
                if entry else None
            ),
            "customer_notified": result["notified"],
        }
    )

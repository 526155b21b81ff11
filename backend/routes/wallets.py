"""
Customer wallet read-out — balance and ledger.
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from deps import Pagination, pagination_params
from domain.responses import money, success_response
from services import payment_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/customers", tags=["wallets"])


@router.get("/{customer_id}/wallet")
async def get_wallet(
    customer_id: int,
    page: Pagination = Depends(pagination_params),
    db: AsyncSession = Depends(get_db),
):
    wallet = await payment_service.get_wallet(db, customer_id, limit=page["limit"], offset=page["offset"])
    return success_response(
        data={
            "customer_id": customer_id,
            "balance": money(wallet["balance"]),
            "transactions": [
                {
                    "id": t.id,
                    "type": t.transaction_type,
                    "amount": money(t.amount),
                    "balance_after": money(t.balance_after),
                    "order_id": t.order_id,
                    "payment_confirmation_id": t.payment_confirmation_id,
                    "description": t.description,
                    "created_at": t.created_at.isoformat() if t.created_at else None,
                }
                for t in wallet["transactions"]
            ],
        },
        meta={"total": len(wallet["transactions"])},
    )

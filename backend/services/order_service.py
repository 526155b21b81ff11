"""
Order lookups shared by the readiness, payment and audit services.
"""
import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from db_models import Customer, Order
from domain.constants import ORDER_REF_LENGTH
from domain.errors import NotFoundError, StoreError

logger = logging.getLogger(__name__)


async def get_order(db: AsyncSession, order_id: int) -> Order:
    """Load an order or raise NotFoundError / StoreError."""
    try:
        result = await db.execute(
            select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
        )
    except SQLAlchemyError as e:
        logger.error(f"Order lookup failed for {order_id}: {e}")
        raise StoreError() from e
    order = result.scalar_one_or_none()
    if not order:
        raise NotFoundError("Order", str(order_id))
    return order


async def get_customer(db: AsyncSession, customer_id: int) -> Customer | None:
    result = await db.execute(select(Customer).where(Customer.id == customer_id))
    return result.scalar_one_or_none()


def order_ref(order: Order) -> str:
    """Short customer-facing reference: order_number, else the id tail."""
    if order.order_number:
        return str(order.order_number)
    return str(order.id)[-ORDER_REF_LENGTH:]

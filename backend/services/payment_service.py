"""
Payment Reconciliation Service — what the customer paid vs. the invoice.

Flow (one call per order, exactly once):
    1. Caller says the amount matches      → cause 'matching', received = invoice
       or supplies amount_received + cause (tip | wallet | no_change | other;
       'other' needs a note). A zero difference is always 'matching'.
    2. Commit, in ONE transaction:
         a. insert PaymentConfirmation (difference = received - invoice)
         b. order.payment_status='received', payment_confirmed_at,
            payment_confirmation_id (guarded on "not yet confirmed")
         c. wallet | no_change with a positive difference:
            wallet upsert + atomic balance increment + ledger entry
       Any failure rolls back a-c and raises ReconciliationError.
    3. Customer WhatsApp receipt, template chosen by cause. Best effort:
       a failed send never undoes step 2.

Tips are recorded on the confirmation row only; no wallet or specialist
earnings movement.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import upsert_insert
from db_models import CustomerWallet, CustomerWalletTransaction, Order, PaymentConfirmation
from domain.constants import (
    DIFFERENCE_CAUSES,
    MAX_MONEY,
    MONEY_QUANTUM,
    TABLE_CUSTOMER_WALLETS,
    TABLE_ORDERS,
    TABLE_PAYMENT_CONFIRMATIONS,
    WALLET_CREDIT_CAUSES,
    WALLET_TX_CREDIT,
)
from domain.enums import DifferenceCause, PaymentStatus
from domain.errors import ConflictError, ReconciliationError, ValidationError
from services.change_feed import ChangeFeed, get_change_feed
from services.notification_service import NotificationSink, deliver, get_notification_sink
from services.order_service import get_customer, get_order, order_ref

logger = logging.getLogger(__name__)


def to_money(value, field: str = "amount") -> Decimal:
    """Coerce to a two-decimal Decimal or raise ValidationError."""
    try:
        amount = Decimal(str(value))
        if not amount.is_finite():
            raise InvalidOperation
        amount = amount.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"Not a valid amount: {value!r}", field=field)
    if abs(amount) > MAX_MONEY:
        raise ValidationError(f"Amount exceeds {MAX_MONEY}: {value!r}", field=field)
    return amount


@dataclass(frozen=True)
class ReconciliationPlan:
    """Validated outcome of the caller's answers, before anything is written."""

    invoice_amount: Decimal
    amount_received: Decimal
    difference: Decimal
    cause: str
    note: Optional[str]

    @property
    def credits_wallet(self) -> bool:
        return self.cause in WALLET_CREDIT_CAUSES and self.difference > 0


def plan_reconciliation(
    invoice_amount,
    *,
    amount_matches: bool,
    amount_received=None,
    cause: Optional[str] = None,
    note: Optional[str] = None,
) -> ReconciliationPlan:
    """
    Validate the confirmation answers and compute the signed difference.

    Raises:
        ValidationError: non-positive amounts, missing/unknown cause,
            'other' without a note
    """
    invoice = to_money(invoice_amount, field="invoice_amount")
    if invoice <= 0:
        raise ValidationError("Invoice amount must be positive", field="invoice_amount")

    note = (note or "").strip() or None

    if amount_matches:
        return ReconciliationPlan(invoice, invoice, Decimal("0.00"), DifferenceCause.MATCHING.value, note)

    if amount_received is None:
        raise ValidationError("Amount received is required", field="amount_received")
    received = to_money(amount_received, field="amount_received")
    if received <= 0:
        raise ValidationError("Amount received must be positive", field="amount_received")

    difference = (received - invoice).quantize(MONEY_QUANTUM)
    if difference == 0:
        return ReconciliationPlan(invoice, received, difference, DifferenceCause.MATCHING.value, note)

    if not cause:
        raise ValidationError("A reason for the difference is required", field="cause")
    if cause not in DIFFERENCE_CAUSES:
        raise ValidationError(f"Unknown difference cause {cause!r}", field="cause")
    if cause == DifferenceCause.OTHER.value and not note:
        raise ValidationError("Describe the reason for the difference", field="note")

    return ReconciliationPlan(invoice, received, difference, cause, note)


# ════════════════════════════════════════════════════════════════════
# Wallet
# ════════════════════════════════════════════════════════════════════


async def credit_customer_wallet(
    db: AsyncSession,
    *,
    customer_id: int,
    amount,
    payment_confirmation_id: Optional[int] = None,
    order_id: Optional[int] = None,
    description: Optional[str] = None,
    now: Optional[datetime] = None,
) -> CustomerWalletTransaction:
    """
    Credit a customer's wallet and append the ledger entry.

    The wallet row is created on first credit (insert-or-ignore) and the
    balance moves with a single `balance = balance + :amount` UPDATE, so two
    concurrent credits cannot lose an update. balance_after is read back
    from the row after the increment. Does not commit.
    """
    amount = to_money(amount)
    if amount <= 0:
        raise ValidationError("Wallet credit must be positive", field="amount")
    now = now or datetime.utcnow()

    await db.execute(
        upsert_insert(db, CustomerWallet)
        .values(customer_id=customer_id, balance=Decimal("0.00"), created_at=now, updated_at=now)
        .on_conflict_do_nothing(index_elements=["customer_id"])
    )
    await db.execute(
        update(CustomerWallet)
        .where(CustomerWallet.customer_id == customer_id)
        .values(balance=CustomerWallet.balance + amount, updated_at=now)
    )

    wallet = (
        await db.execute(
            select(CustomerWallet)
            .where(CustomerWallet.customer_id == customer_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one()

    entry = CustomerWalletTransaction(
        customer_id=customer_id,
        wallet_id=wallet.id,
        payment_confirmation_id=payment_confirmation_id,
        order_id=order_id,
        transaction_type=WALLET_TX_CREDIT,
        amount=amount,
        balance_after=to_money(wallet.balance),
        description=description,
        created_at=now,
    )
    db.add(entry)
    await db.flush()

    logger.info(f"Wallet: customer {customer_id} +{amount} → balance {entry.balance_after}")
    return entry


async def get_wallet(db: AsyncSession, customer_id: int, *, limit: int = 50, offset: int = 0) -> dict:
    """Balance and newest-first ledger for a customer (zero balance if no wallet yet)."""
    wallet = (
        await db.execute(select(CustomerWallet).where(CustomerWallet.customer_id == customer_id))
    ).scalar_one_or_none()
    entries = (
        await db.execute(
            select(CustomerWalletTransaction)
            .where(CustomerWalletTransaction.customer_id == customer_id)
            .order_by(CustomerWalletTransaction.id.desc())
            .offset(offset)
            .limit(limit)
        )
    ).scalars().all()
    return {
        "customer_id": customer_id,
        "balance": to_money(wallet.balance) if wallet else Decimal("0.00"),
        "transactions": entries,
    }


# ════════════════════════════════════════════════════════════════════
# Customer message
# ════════════════════════════════════════════════════════════════════


def build_customer_message(plan: ReconciliationPlan, ref: str, currency: str) -> str:
    """Receipt text chosen by cause; tip and wallet wording only for a surplus."""
    head = f"Payment received for order #{ref}."
    amounts = (
        f"Amount received: {plan.amount_received} {currency}\n"
        f"Invoice amount: {plan.invoice_amount} {currency}"
    )

    if plan.cause == DifferenceCause.MATCHING.value:
        return (
            f"✅ Your payment for order #{ref} has been received successfully.\n\n"
            f"Amount: {plan.amount_received} {currency}\n\n"
            f"Thank you for using our services 🌟"
        )
    if plan.cause == DifferenceCause.TIP.value and plan.difference > 0:
        return (
            f"✅ {head}\n\n{amounts}\n\n"
            f"💰 Do you confirm that the additional amount ({plan.difference} {currency}) "
            f"is a tip for the specialist?\n\n"
            f"If no response within 24 hours, it will be automatically considered as a tip."
        )
    if plan.credits_wallet:
        return (
            f"✅ {head}\n\n{amounts}\n\n"
            f"💳 The additional amount ({plan.difference} {currency}) has been saved in your "
            f"wallet for future orders.\n\n"
            f"⚠️ This amount cannot be refunded in cash, but is available as credit for your next orders."
        )
    return (
        f"⚠️ {head}\n\n{amounts}\n\n"
        f"A payment difference has been recorded and will be reviewed by management."
    )


# ════════════════════════════════════════════════════════════════════
# Confirmation
# ════════════════════════════════════════════════════════════════════


async def confirm_payment(
    db: AsyncSession,
    order_id: int,
    *,
    amount_matches: bool,
    amount_received=None,
    cause: Optional[str] = None,
    note: Optional[str] = None,
    invoice_amount=None,
    now: Optional[datetime] = None,
    sink: Optional[NotificationSink] = None,
    feed: Optional[ChangeFeed] = None,
) -> dict:
    """
    Reconcile and record payment for an order.

    Args:
        invoice_amount: defaults to order.total_amount

    Returns:
        dict: {
            confirmation: PaymentConfirmation,
            order: Order,
            wallet_transaction: CustomerWalletTransaction | None,
            notified: bool,
        }

    Raises:
        ValidationError: bad input (nothing written)
        NotFoundError: unknown order
        ConflictError: order already has a payment confirmation
        ReconciliationError: commit failed and was rolled back
    """
    now = now or datetime.utcnow()
    order = await get_order(db, order_id)

    if order.payment_confirmation_id is not None:
        raise ConflictError(
            f"Payment for order {order_id} is already confirmed",
            details={"order_id": order_id, "payment_confirmation_id": order.payment_confirmation_id},
        )

    invoice = invoice_amount if invoice_amount is not None else order.total_amount
    if invoice is None:
        raise ValidationError("Order has no invoice amount", field="invoice_amount")

    plan = plan_reconciliation(
        invoice,
        amount_matches=amount_matches,
        amount_received=amount_received,
        cause=cause,
        note=note,
    )

    customer_id = order.customer_id
    ref = order_ref(order)
    currency = order.currency or settings.default_currency
    wallet_entry = None

    try:
        confirmation = PaymentConfirmation(
            order_id=order_id,
            specialist_id=order.specialist_id,
            customer_id=customer_id,
            invoice_amount=plan.invoice_amount,
            amount_received=plan.amount_received,
            difference_amount=plan.difference,
            difference_cause=plan.cause,
            notes=plan.note,
            created_at=now,
        )
        db.add(confirmation)
        await db.flush()

        res = await db.execute(
            update(Order)
            .where(Order.id == order_id, Order.payment_confirmation_id.is_(None))
            .values(
                payment_status=PaymentStatus.RECEIVED.value,
                payment_confirmed_at=now,
                payment_confirmation_id=confirmation.id,
                updated_at=now,
            )
        )
        if (res.rowcount or 0) == 0:
            await db.rollback()
            raise ConflictError(
                f"Payment for order {order_id} is already confirmed",
                details={"order_id": order_id},
            )

        if plan.credits_wallet:
            wallet_entry = await credit_customer_wallet(
                db,
                customer_id=customer_id,
                amount=plan.difference,
                payment_confirmation_id=confirmation.id,
                order_id=order_id,
                description=f"Payment surplus from order #{ref}",
                now=now,
            )

        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        logger.warning(f"Payment for order {order_id} lost a confirmation race: {e}")
        raise ConflictError(
            f"Payment for order {order_id} is already confirmed",
            details={"order_id": order_id},
        ) from e
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"Payment confirmation for order {order_id} rolled back: {e}", exc_info=True)
        raise ReconciliationError(details={"order_id": order_id}) from e

    await db.refresh(order)
    logger.info(
        f"Payment: order {order_id} confirmed ({plan.cause}) "
        f"invoice={plan.invoice_amount} received={plan.amount_received} diff={plan.difference}"
        f"{' → wallet' if wallet_entry else ''}"
    )

    feed = feed or get_change_feed()
    await feed.publish(TABLE_PAYMENT_CONFIRMATIONS, id=confirmation.id, order_id=order_id)
    await feed.publish(TABLE_ORDERS, id=order_id, customer_id=customer_id)
    if wallet_entry is not None:
        await feed.publish(TABLE_CUSTOMER_WALLETS, customer_id=customer_id)

    notified = False
    try:
        customer = await get_customer(db, customer_id)
        destination = customer.whatsapp_number if customer else None
        notified = await deliver(
            sink or get_notification_sink(),
            destination,
            build_customer_message(plan, ref, currency),
        )
    except SQLAlchemyError as e:
        logger.warning(f"Payment receipt for order {order_id} not sent (customer lookup failed): {e}")

    return {
        "confirmation": confirmation,
        "order": order,
        "wallet_transaction": wallet_entry,
        "notified": notified,
    }

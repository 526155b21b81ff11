"""
Unit tests for payment reconciliation.

Tests difference classification, the single-transaction commit (confirmation,
order update, wallet credit), customer receipts and failure handling.
"""
import asyncio
from datetime import datetime
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base
from db_models import Customer, CustomerWallet, CustomerWalletTransaction, Order, PaymentConfirmation
from domain.constants import TABLE_CUSTOMER_WALLETS, TABLE_ORDERS, TABLE_PAYMENT_CONFIRMATIONS
from domain.errors import ConflictError, ReconciliationError, ValidationError
from services import payment_service

NOW = datetime(2026, 3, 10, 13, 0)
CUSTOMER_PHONE = "+966500000001"


async def _count(db, model) -> int:
    return (await db.execute(select(func.count()).select_from(model))).scalar_one()


# ── Planning (pure) ───────────────────────────────────────────────────


class TestPlanReconciliation:

    def test_matching(self):
        plan = payment_service.plan_reconciliation("100", amount_matches=True)
        assert plan.cause == "matching"
        assert plan.amount_received == Decimal("100.00")
        assert plan.difference == Decimal("0.00")
        assert plan.credits_wallet is False

    def test_zero_difference_is_matching_whatever_the_cause(self):
        plan = payment_service.plan_reconciliation(
            Decimal("100.00"), amount_matches=False, amount_received="100.00", cause="tip"
        )
        assert plan.cause == "matching"

    def test_overpayment_to_wallet(self):
        plan = payment_service.plan_reconciliation(
            Decimal("100"), amount_matches=False, amount_received=Decimal("115"), cause="wallet"
        )
        assert plan.difference == Decimal("15.00")
        assert plan.credits_wallet is True

    def test_underpayment_never_credits(self):
        plan = payment_service.plan_reconciliation(
            Decimal("100"), amount_matches=False, amount_received=Decimal("90"), cause="no_change"
        )
        assert plan.difference == Decimal("-10.00")
        assert plan.credits_wallet is False

    def test_rounds_to_cents(self):
        plan = payment_service.plan_reconciliation(
            "100.004", amount_matches=False, amount_received="100.125", cause="tip"
        )
        assert plan.invoice_amount == Decimal("100.00")
        assert plan.amount_received == Decimal("100.13")
        assert plan.difference == Decimal("0.13")

    @pytest.mark.parametrize(
        "kwargs, field",
        [
            ({"amount_received": None, "cause": "tip"}, "amount_received"),
            ({"amount_received": "0", "cause": "tip"}, "amount_received"),
            ({"amount_received": "-5", "cause": "tip"}, "amount_received"),
            ({"amount_received": "abc", "cause": "tip"}, "amount_received"),
            ({"amount_received": "1e30", "cause": "wallet"}, "amount_received"),
            ({"amount_received": "10000000000.00", "cause": "wallet"}, "amount_received"),
            ({"amount_received": "Infinity", "cause": "tip"}, "amount_received"),
            ({"amount_received": "110"}, "cause"),
            ({"amount_received": "110", "cause": "bribe"}, "cause"),
            ({"amount_received": "110", "cause": "other"}, "note"),
            ({"amount_received": "110", "cause": "other", "note": "   "}, "note"),
        ],
    )
    def test_rejects_bad_answers(self, kwargs, field):
        with pytest.raises(ValidationError) as exc:
            payment_service.plan_reconciliation(Decimal("100"), amount_matches=False, **kwargs)
        assert field in exc.value.message

    def test_rejects_non_positive_invoice(self):
        with pytest.raises(ValidationError):
            payment_service.plan_reconciliation("0", amount_matches=True)


class TestCustomerMessage:

    def test_wallet_surplus_mentions_wallet(self):
        plan = payment_service.plan_reconciliation("100", amount_matches=False, amount_received="115", cause="wallet")
        text = payment_service.build_customer_message(plan, "D400", "SAR")
        assert "saved in your wallet" in text
        assert "15.00 SAR" in text

    @pytest.mark.parametrize("cause", ["wallet", "tip"])
    def test_shortfall_goes_to_review(self, cause):
        plan = payment_service.plan_reconciliation("100", amount_matches=False, amount_received="90", cause=cause)
        text = payment_service.build_customer_message(plan, "D400", "SAR")
        assert "saved in your wallet" not in text
        assert "tip for the specialist" not in text
        assert "reviewed by management" in text


# ── Confirmation ──────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_confirm_matching_payment(db_session, make_order, specialist, sink, feed):
    order = await make_order(order_number="B200", specialist_id=specialist.id)

    result = await payment_service.confirm_payment(
        db_session, order.id, amount_matches=True, now=NOW, sink=sink, feed=feed
    )

    confirmation = result["confirmation"]
    assert confirmation.difference_cause == "matching"
    assert confirmation.amount_received == Decimal("100.00")
    assert confirmation.difference_amount == Decimal("0.00")
    assert confirmation.specialist_id == specialist.id

    updated = result["order"]
    assert updated.payment_status == "received"
    assert updated.payment_confirmed_at == NOW
    assert updated.payment_confirmation_id == confirmation.id

    assert result["wallet_transaction"] is None
    assert result["notified"] is True
    messages = sink.to(CUSTOMER_PHONE)
    assert len(messages) == 1
    assert "#B200" in messages[0]
    assert "received successfully" in messages[0]


@pytest.mark.asyncio
async def test_overpayment_credits_wallet(db_session, make_order, sink, feed):
    order = await make_order(order_number="B201")
    wallet_events = []
    feed.subscribe(TABLE_CUSTOMER_WALLETS, wallet_events.append)

    result = await payment_service.confirm_payment(
        db_session,
        order.id,
        amount_matches=False,
        amount_received=Decimal("115.00"),
        cause="wallet",
        now=NOW,
        sink=sink,
        feed=feed,
    )

    assert result["confirmation"].difference_amount == Decimal("15.00")
    entry = result["wallet_transaction"]
    assert entry.amount == Decimal("15.00")
    assert entry.balance_after == Decimal("15.00")
    assert entry.payment_confirmation_id == result["confirmation"].id
    assert entry.order_id == order.id
    assert entry.transaction_type == "credit"

    wallet = await payment_service.get_wallet(db_session, order.customer_id)
    assert wallet["balance"] == Decimal("15.00")
    assert len(wallet["transactions"]) == 1
    assert len(wallet_events) == 1
    assert "saved in your wallet" in sink.to(CUSTOMER_PHONE)[0]


@pytest.mark.asyncio
async def test_sequential_credits_accumulate(db_session, make_order, sink, feed):
    first = await make_order()
    second = await make_order(total_amount=Decimal("50.00"))

    await payment_service.confirm_payment(
        db_session, first.id, amount_matches=False, amount_received="115", cause="wallet",
        now=NOW, sink=sink, feed=feed,
    )
    result = await payment_service.confirm_payment(
        db_session, second.id, amount_matches=False, amount_received="55", cause="no_change",
        now=NOW, sink=sink, feed=feed,
    )

    assert result["wallet_transaction"].balance_after == Decimal("20.00")
    assert await _count(db_session, CustomerWallet) == 1
    wallet = await payment_service.get_wallet(db_session, first.customer_id)
    assert wallet["balance"] == Decimal("20.00")
    assert [t.balance_after for t in wallet["transactions"]] == [Decimal("20.00"), Decimal("15.00")]


@pytest.mark.asyncio
async def test_tip_recorded_without_wallet_movement(db_session, make_order, sink, feed):
    order = await make_order()

    result = await payment_service.confirm_payment(
        db_session, order.id, amount_matches=False, amount_received="110", cause="tip",
        now=NOW, sink=sink, feed=feed,
    )

    assert result["confirmation"].difference_cause == "tip"
    assert result["confirmation"].difference_amount == Decimal("10.00")
    assert result["wallet_transaction"] is None
    assert await _count(db_session, CustomerWallet) == 0
    assert await _count(db_session, CustomerWalletTransaction) == 0
    assert "tip for the specialist" in sink.to(CUSTOMER_PHONE)[0]


@pytest.mark.asyncio
async def test_underpayment_with_note(db_session, make_order, sink, feed):
    order = await make_order()

    result = await payment_service.confirm_payment(
        db_session, order.id, amount_matches=False, amount_received="90", cause="other",
        note="customer short on cash", now=NOW, sink=sink, feed=feed,
    )

    assert result["confirmation"].difference_amount == Decimal("-10.00")
    assert result["confirmation"].notes == "customer short on cash"
    assert result["wallet_transaction"] is None
    assert "reviewed by management" in sink.to(CUSTOMER_PHONE)[0]


@pytest.mark.asyncio
async def test_explicit_invoice_amount_overrides_order_total(db_session, make_order, sink, feed):
    order = await make_order()

    result = await payment_service.confirm_payment(
        db_session, order.id, amount_matches=False, amount_received="90", cause="wallet",
        invoice_amount="80", now=NOW, sink=sink, feed=feed,
    )

    assert result["confirmation"].invoice_amount == Decimal("80.00")
    assert result["wallet_transaction"].amount == Decimal("10.00")


@pytest.mark.asyncio
async def test_validation_failure_writes_nothing(db_session, make_order, sink, feed):
    order = await make_order()

    with pytest.raises(ValidationError):
        await payment_service.confirm_payment(
            db_session, order.id, amount_matches=False, amount_received="120",
            now=NOW, sink=sink, feed=feed,
        )

    assert await _count(db_session, PaymentConfirmation) == 0
    await db_session.refresh(order)
    assert order.payment_status is None
    assert sink.sent == []


@pytest.mark.asyncio
async def test_missing_invoice_amount(db_session, make_order, sink, feed):
    order = await make_order(total_amount=None)

    with pytest.raises(ValidationError):
        await payment_service.confirm_payment(
            db_session, order.id, amount_matches=True, now=NOW, sink=sink, feed=feed
        )


@pytest.mark.asyncio
async def test_second_confirmation_conflicts(db_session, make_order, sink, feed):
    order = await make_order()
    await payment_service.confirm_payment(
        db_session, order.id, amount_matches=True, now=NOW, sink=sink, feed=feed
    )

    with pytest.raises(ConflictError):
        await payment_service.confirm_payment(
            db_session, order.id, amount_matches=False, amount_received="150", cause="wallet",
            now=NOW, sink=sink, feed=feed,
        )

    assert await _count(db_session, PaymentConfirmation) == 1
    assert await _count(db_session, CustomerWalletTransaction) == 0


@pytest.mark.asyncio
async def test_notification_failure_keeps_payment(db_session, make_order, failing_sink, feed):
    order = await make_order()

    result = await payment_service.confirm_payment(
        db_session, order.id, amount_matches=False, amount_received="115", cause="wallet",
        now=NOW, sink=failing_sink, feed=feed,
    )

    assert result["notified"] is False
    assert await _count(db_session, PaymentConfirmation) == 1
    wallet = await payment_service.get_wallet(db_session, order.customer_id)
    assert wallet["balance"] == Decimal("15.00")


@pytest.mark.asyncio
async def test_wallet_failure_rolls_back_everything(db_session, make_order, sink, feed):
    order = await make_order()
    order_id = order.id
    events = []
    feed.subscribe(TABLE_ORDERS, events.append)
    feed.subscribe(TABLE_PAYMENT_CONFIRMATIONS, events.append)

    boom = AsyncMock(side_effect=OperationalError("UPDATE customer_wallets", {}, Exception("disk I/O error")))
    with patch("services.payment_service.credit_customer_wallet", boom):
        with pytest.raises(ReconciliationError) as exc:
            await payment_service.confirm_payment(
                db_session, order_id, amount_matches=False, amount_received="115", cause="wallet",
                now=NOW, sink=sink, feed=feed,
            )

    assert exc.value.status_code == 500
    assert await _count(db_session, PaymentConfirmation) == 0
    assert await _count(db_session, CustomerWallet) == 0
    row = (await db_session.execute(select(Order).where(Order.id == order_id))).scalar_one()
    await db_session.refresh(row)
    assert row.payment_status is None
    assert row.payment_confirmation_id is None
    assert events == []
    assert sink.sent == []


@pytest.mark.asyncio
async def test_customer_without_number_is_not_notified(db_session, make_order, customer, sink, feed):
    customer.whatsapp_number = None
    await db_session.commit()
    order = await make_order()

    result = await payment_service.confirm_payment(
        db_session, order.id, amount_matches=True, now=NOW, sink=sink, feed=feed
    )

    assert result["notified"] is False
    assert result["order"].payment_status == "received"


# ── Wallet ────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_credit_rejects_non_positive(db_session, customer):
    with pytest.raises(ValidationError):
        await payment_service.credit_customer_wallet(db_session, customer_id=customer.id, amount="0")


@pytest.mark.asyncio
async def test_get_wallet_without_credits(db_session, customer):
    wallet = await payment_service.get_wallet(db_session, customer.id)
    assert wallet["balance"] == Decimal("0.00")
    assert wallet["transactions"] == []


@pytest.mark.asyncio
async def test_overpayment_onto_existing_wallet(db_session, make_order, customer, sink, feed):
    await payment_service.credit_customer_wallet(
        db_session, customer_id=customer.id, amount=Decimal("50.00"), description="opening credit"
    )
    await db_session.commit()
    order = await make_order()

    result = await payment_service.confirm_payment(
        db_session, order.id, amount_matches=False, amount_received="130", cause="wallet",
        now=NOW, sink=sink, feed=feed,
    )

    entry = result["wallet_transaction"]
    assert entry.amount == Decimal("30.00")
    assert entry.balance_after == Decimal("80.00")
    wallet = await payment_service.get_wallet(db_session, customer.id)
    assert wallet["balance"] == Decimal("80.00")
    assert await _count(db_session, CustomerWallet) == 1


@pytest.mark.asyncio
async def test_concurrent_credits_do_not_lose_updates(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'wallets.db'}", connect_args={"timeout": 30}
    )
    amounts = [Decimal("10.00"), Decimal("20.00"), Decimal("5.50"), Decimal("1.25"), Decimal("3.25")]
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

        async with factory() as db:
            row = Customer(name="Sara", whatsapp_number=CUSTOMER_PHONE)
            db.add(row)
            await db.commit()
            customer_id = row.id

        async def credit(amount):
            async with factory() as db:
                entry = await payment_service.credit_customer_wallet(db, customer_id=customer_id, amount=amount)
                await db.commit()
                return entry.balance_after

        balances = sorted(await asyncio.gather(*(credit(a) for a in amounts)))

        async with factory() as db:
            wallet = await payment_service.get_wallet(db, customer_id)
    finally:
        await engine.dispose()

    assert wallet["balance"] == sum(amounts)
    assert len(wallet["transactions"]) == len(amounts)
    # every balance_after is a running total: consecutive steps are exactly the credits
    steps = [after - before for before, after in zip([Decimal("0.00")] + balances, balances)]
    assert sorted(steps) == sorted(amounts)


@pytest.mark.asyncio
async def test_racing_confirmation_insert_is_conflict(db_session, make_order, sink, feed):
    order = await make_order()
    order_id, customer_id = order.id, order.customer_id
    # another writer inserted its confirmation but has not linked the order yet
    db_session.add(
        PaymentConfirmation(
            order_id=order_id,
            customer_id=customer_id,
            invoice_amount=Decimal("100.00"),
            amount_received=Decimal("100.00"),
            difference_amount=Decimal("0.00"),
            difference_cause="matching",
            created_at=NOW,
        )
    )
    await db_session.commit()

    with pytest.raises(ConflictError):
        await payment_service.confirm_payment(
            db_session, order_id, amount_matches=False, amount_received="115", cause="wallet",
            now=NOW, sink=sink, feed=feed,
        )

    assert await _count(db_session, PaymentConfirmation) == 1
    assert await _count(db_session, CustomerWallet) == 0
    row = (await db_session.execute(select(Order).where(Order.id == order_id))).scalar_one()
    await db_session.refresh(row)
    assert row.payment_status is None
    assert sink.sent == []


@pytest.mark.asyncio
async def test_confirmation_insert_failure_writes_nothing(db_session, make_order, sink, feed):
    order = await make_order()
    order_id = order.id

    boom = AsyncMock(side_effect=OperationalError("INSERT INTO payment_confirmations", {}, Exception("disk full")))
    with patch.object(db_session, "flush", boom):
        with pytest.raises(ReconciliationError):
            await payment_service.confirm_payment(
                db_session, order_id, amount_matches=True, now=NOW, sink=sink, feed=feed,
            )

    assert await _count(db_session, PaymentConfirmation) == 0
    row = (await db_session.execute(select(Order).where(Order.id == order_id))).scalar_one()
    await db_session.refresh(row)
    assert row.payment_status is None
    assert row.payment_confirmation_id is None
    assert sink.sent == []

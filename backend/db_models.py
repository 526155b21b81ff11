"""
SQLAlchemy ORM models for the Order Lifecycle service.

Tables:
    customers                    — people placing orders (WhatsApp contact)
    specialists                  — people quoting and performing orders
    orders                       — one service engagement each
    order_specialists            — per (order, specialist) candidacy / quote
    payment_confirmations        — immutable reconciliation records
    customer_wallets             — one running credit balance per customer
    customer_wallet_transactions — append-only wallet ledger
"""
from datetime import datetime

from sqlalchemy import (
    Column, Integer, String, Boolean, Date, DateTime, Text, Numeric, ForeignKey,
    UniqueConstraint, Index,
)
from sqlalchemy.orm import relationship

from database import Base

# Two-decimal currency column, returned as Decimal
Money = Numeric(12, 2, asdecimal=True)


class Customer(Base):
    """Customers; whatsapp_number is the notification destination."""
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    whatsapp_number = Column(String(32), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    wallet = relationship("CustomerWallet", back_populates="customer", uselist=False, lazy="select")


class Specialist(Base):
    """Specialists; phone receives readiness prompts."""
    __tablename__ = "specialists"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    phone = Column(String(32), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class Order(Base):
    """
    One customer request for a service engagement.

    `status` is the primary lifecycle axis; `tracking_stage` is the finer
    sub-state of an active order (waiting → working → payment_received).
    The payment_* columns are written exactly once by the payment service.
    """
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_number = Column(String(32), unique=True, nullable=True, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    specialist_id = Column(Integer, ForeignKey("specialists.id"), nullable=True, index=True)

    status = Column(String(20), nullable=False, default="pending", index=True)
    tracking_stage = Column(String(20), nullable=True, index=True)  # waiting | working | payment_received
    waiting_started_at = Column(DateTime, nullable=True)
    waiting_ends_at = Column(DateTime, nullable=True)

    booking_date = Column(Date, nullable=True)
    booking_time = Column(String(40), nullable=True)  # slot name, "HH:MM", or "HH:MM-HH:MM"
    total_amount = Column(Money, nullable=True)  # invoice amount
    currency = Column(String(8), nullable=True)

    # Readiness protocol
    specialist_readiness_status = Column(String(20), nullable=True)  # pending | ready | not_ready | no_response | needs_reassignment
    specialist_not_ready_reason = Column(Text, nullable=True)
    readiness_check_sent_at = Column(DateTime, nullable=True)
    readiness_notification_viewed_at = Column(DateTime, nullable=True)
    specialist_readiness_response_at = Column(DateTime, nullable=True)
    readiness_reminder_count = Column(Integer, nullable=False, default=0)
    readiness_last_reminder_at = Column(DateTime, nullable=True)
    # "start moving" nudges after a ready answer while tracking_stage is still NULL
    movement_reminder_count = Column(Integer, nullable=False, default=0)
    movement_last_reminder_at = Column(DateTime, nullable=True)

    # Payment
    payment_status = Column(String(20), nullable=True)
    payment_confirmed_at = Column(DateTime, nullable=True)
    # No FK: payment_confirmations already references orders
    payment_confirmation_id = Column(Integer, nullable=True, unique=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    customer = relationship("Customer", lazy="select")
    specialist = relationship("Specialist", lazy="select")
    candidacies = relationship("OrderSpecialist", back_populates="order", lazy="select")

    __table_args__ = (
        # Auditor queries filter on both lifecycle axes
        Index("ix_orders_status_stage", "status", "tracking_stage"),
        # Readiness dispatcher: upcoming orders by readiness state
        Index("ix_orders_status_readiness", "status", "specialist_readiness_status"),
    )


class OrderSpecialist(Base):
    """
    One specialist's candidacy for one order.

    is_accepted is tri-state: True accepted, False rejected, None undecided.
    """
    __tablename__ = "order_specialists"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    specialist_id = Column(Integer, ForeignKey("specialists.id"), nullable=False, index=True)
    is_accepted = Column(Boolean, nullable=True)
    quoted_price = Column(Money, nullable=True)
    quoted_at = Column(DateTime, nullable=True)
    rejected_at = Column(DateTime, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    order = relationship("Order", back_populates="candidacies")

    __table_args__ = (
        UniqueConstraint("order_id", "specialist_id", name="uq_order_specialist"),
    )


class PaymentConfirmation(Base):
    """
    Immutable record of one reconciliation event.

    difference_amount = amount_received - invoice_amount (signed).
    order_id is unique: an order is reconciled at most once.
    """
    __tablename__ = "payment_confirmations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, unique=True, index=True)
    specialist_id = Column(Integer, ForeignKey("specialists.id"), nullable=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    invoice_amount = Column(Money, nullable=False)
    amount_received = Column(Money, nullable=False)
    difference_amount = Column(Money, nullable=False)
    difference_cause = Column(String(20), nullable=False)  # matching | tip | wallet | no_change | other
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class CustomerWallet(Base):
    """At most one per customer, created lazily on first credit."""
    __tablename__ = "customer_wallets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, unique=True, index=True)
    balance = Column(Money, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    customer = relationship("Customer", back_populates="wallet")


class CustomerWalletTransaction(Base):
    """
    Append-only wallet ledger.

    balance_after is the wallet balance immediately after this entry.
    """
    __tablename__ = "customer_wallet_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    wallet_id = Column(Integer, ForeignKey("customer_wallets.id"), nullable=False)
    payment_confirmation_id = Column(Integer, ForeignKey("payment_confirmations.id"), nullable=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True)
    transaction_type = Column(String(20), nullable=False, default="credit")
    amount = Column(Money, nullable=False)
    balance_after = Column(Money, nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    __table_args__ = (
        Index("ix_wallet_tx_customer_created", "customer_id", "created_at"),
    )

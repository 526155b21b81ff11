"""
Readiness Protocol Service — specialist confirmation before an imminent booking.

An order is awaiting a readiness answer when:
    status = 'upcoming'
    specialist_readiness_status = 'pending'
    readiness_check_sent_at IS NOT NULL

(the readiness dispatcher sets the last two; see readiness_scheduler.py).

Answers:
    ready      → status 'ready', response timestamp, reason cleared
    not ready  → candidacy rejected with the reason, specialist unassigned,
                 status 'not_ready' (one transaction, both writes or neither)

Every answer is a conditional UPDATE guarded on the readiness state (and the
responding specialist when given), so a concurrent resolution or
reassignment surfaces as ConflictError instead of a silent overwrite.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from db_models import Order, OrderSpecialist
from domain.booking_time import classify_urgency, parse_booking_time, time_until_booking, booking_instant
from domain.constants import TABLE_ORDERS, TABLE_ORDER_SPECIALISTS
from domain.enums import ReadinessStatus
from domain.errors import ConflictError, StoreError, ValidationError
from services.change_feed import ChangeEvent, ChangeFeed, get_change_feed
from services.notification_service import NotificationSink, deliver, get_notification_sink
from services.order_service import get_order, order_ref

logger = logging.getLogger(__name__)


def _pending_guard(order_id: int, specialist_id: Optional[int]):
    """WHERE clause shared by both answers."""
    clauses = [
        Order.id == order_id,
        Order.specialist_readiness_status == ReadinessStatus.PENDING.value,
    ]
    if specialist_id is not None:
        clauses.append(Order.specialist_id == specialist_id)
    return clauses


def _conflict(order: Order, specialist_id: Optional[int]) -> ConflictError:
    if specialist_id is not None and order.specialist_id != specialist_id:
        return ConflictError(
            f"Order {order.id} is no longer assigned to specialist {specialist_id}",
            details={"order_id": order.id, "assigned_specialist_id": order.specialist_id},
        )
    return ConflictError(
        f"Order {order.id} is not awaiting a readiness answer",
        details={"order_id": order.id, "readiness_status": order.specialist_readiness_status},
    )


# ════════════════════════════════════════════════════════════════════
# View telemetry
# ════════════════════════════════════════════════════════════════════


async def record_readiness_view(
    db: AsyncSession,
    order_id: int,
    *,
    now: Optional[datetime] = None,
    feed: Optional[ChangeFeed] = None,
) -> bool:
    """
    Stamp readiness_notification_viewed_at the first time the prompt is seen.

    Idempotent: only a NULL column is written, later calls are no-ops.
    Advisory telemetry, so this never raises; failures are logged.

    Returns:
        True if this call set the timestamp.
    """
    now = now or datetime.utcnow()
    try:
        res = await db.execute(
            update(Order)
            .where(Order.id == order_id, Order.readiness_notification_viewed_at.is_(None))
            .values(readiness_notification_viewed_at=now)
        )
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.warning(f"Readiness view stamp failed for order {order_id} (ignored): {e}")
        return False

    stamped = (res.rowcount or 0) > 0
    if stamped:
        logger.info(f"Readiness prompt viewed: order {order_id}")
        await (feed or get_change_feed()).publish(TABLE_ORDERS, id=order_id)
    return stamped


# ════════════════════════════════════════════════════════════════════
# Answers
# ════════════════════════════════════════════════════════════════════


async def confirm_ready(
    db: AsyncSession,
    order_id: int,
    *,
    specialist_id: Optional[int] = None,
    now: Optional[datetime] = None,
    feed: Optional[ChangeFeed] = None,
) -> Order:
    """
    Record a "ready" answer.

    Args:
        specialist_id: responding specialist; when given the write also
            requires the order to still be assigned to them.

    Raises:
        NotFoundError: unknown order
        ConflictError: readiness already resolved, or specialist reassigned
    """
    now = now or datetime.utcnow()
    order = await get_order(db, order_id)

    try:
        res = await db.execute(
            update(Order)
            .where(*_pending_guard(order_id, specialist_id))
            .values(
                specialist_readiness_status=ReadinessStatus.READY.value,
                specialist_readiness_response_at=now,
                specialist_not_ready_reason=None,
                updated_at=now,
            )
        )
        if (res.rowcount or 0) == 0:
            await db.rollback()
            await db.refresh(order)
            raise _conflict(order, specialist_id)
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"confirm_ready write failed for order {order_id}: {e}")
        raise StoreError() from e

    await db.refresh(order)
    logger.info(f"Readiness: order {order_id} specialist {order.specialist_id} is READY")
    await (feed or get_change_feed()).publish(TABLE_ORDERS, id=order_id, customer_id=order.customer_id)
    return order


async def confirm_not_ready(
    db: AsyncSession,
    order_id: int,
    reason: str,
    *,
    specialist_id: Optional[int] = None,
    now: Optional[datetime] = None,
    feed: Optional[ChangeFeed] = None,
) -> Order:
    """
    Record a "not ready" answer and release the order from the specialist.

    In one transaction:
        1. the (order, assigned specialist) candidacy is rejected with `reason`
           (a rejected row is created if none exists)
        2. the order loses its specialist_id and becomes 'not_ready'; the
           prompt and reminder fields are cleared so whoever is assigned
           next is asked again by the dispatcher

    Raises:
        ValidationError: empty reason (nothing written)
        NotFoundError: unknown order
        ConflictError: readiness already resolved, or specialist reassigned
    """
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A reason is required when not ready", field="reason")

    now = now or datetime.utcnow()
    order = await get_order(db, order_id)

    if order.specialist_readiness_status != ReadinessStatus.PENDING.value:
        raise _conflict(order, None)
    if specialist_id is not None and order.specialist_id != specialist_id:
        raise _conflict(order, specialist_id)

    assigned = order.specialist_id
    try:
        if assigned is not None:
            res = await db.execute(
                update(OrderSpecialist)
                .where(
                    OrderSpecialist.order_id == order_id,
                    OrderSpecialist.specialist_id == assigned,
                )
                .values(is_accepted=False, rejected_at=now, rejection_reason=reason)
            )
            if (res.rowcount or 0) == 0:
                db.add(
                    OrderSpecialist(
                        order_id=order_id,
                        specialist_id=assigned,
                        is_accepted=False,
                        rejected_at=now,
                        rejection_reason=reason,
                    )
                )
                await db.flush()

        assignment_guard = Order.specialist_id.is_(None) if assigned is None else Order.specialist_id == assigned
        res = await db.execute(
            update(Order)
            .where(*_pending_guard(order_id, None), assignment_guard)
            .values(
                specialist_id=None,
                specialist_readiness_status=ReadinessStatus.NOT_READY.value,
                specialist_readiness_response_at=now,
                specialist_not_ready_reason=reason,
                # the next specialist assigned goes through a fresh prompt
                readiness_check_sent_at=None,
                readiness_notification_viewed_at=None,
                readiness_reminder_count=0,
                readiness_last_reminder_at=None,
                movement_reminder_count=0,
                movement_last_reminder_at=None,
                updated_at=now,
            )
        )
        if (res.rowcount or 0) == 0:
            await db.rollback()
            await db.refresh(order)
            raise _conflict(order, assigned)
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"confirm_not_ready write failed for order {order_id}: {e}")
        raise StoreError() from e

    await db.refresh(order)
    logger.info(f"Readiness: order {order_id} specialist {assigned} NOT READY ({reason})")

    feed = feed or get_change_feed()
    await feed.publish(TABLE_ORDERS, id=order_id, customer_id=order.customer_id)
    if assigned is not None:
        await feed.publish(TABLE_ORDER_SPECIALISTS, order_id=order_id, specialist_id=assigned)
    return order


# ════════════════════════════════════════════════════════════════════
# Deadline / snapshot
# ════════════════════════════════════════════════════════════════════


def readiness_snapshot(order: Order, now: Optional[datetime] = None) -> dict:
    """Readiness fields plus time-to-booking and urgency for display."""
    now = now or datetime.utcnow()

    booking = None
    if order.booking_time:
        try:
            booking = parse_booking_time(order.booking_time)
        except ValidationError:
            logger.debug(f"Order {order.id}: unparseable booking_time {order.booking_time!r}")

    instant = booking_instant(order.booking_date, booking)
    remaining = time_until_booking(order.booking_date, booking, now)
    urgency = classify_urgency(remaining, settings.readiness_due_soon_minutes)

    return {
        "order_id": order.id,
        "specialist_id": order.specialist_id,
        "readiness_status": order.specialist_readiness_status,
        "not_ready_reason": order.specialist_not_ready_reason,
        "check_sent_at": order.readiness_check_sent_at.isoformat() if order.readiness_check_sent_at else None,
        "viewed_at": (
            order.readiness_notification_viewed_at.isoformat()
            if order.readiness_notification_viewed_at else None
        ),
        "responded_at": (
            order.specialist_readiness_response_at.isoformat()
            if order.specialist_readiness_response_at else None
        ),
        "reminder_count": order.readiness_reminder_count or 0,
        "movement_reminder_count": order.movement_reminder_count or 0,
        "booking_at": instant.isoformat() if instant else None,
        "seconds_until_booking": int(remaining.total_seconds()) if remaining is not None else None,
        "urgency": urgency.value,
    }


# ════════════════════════════════════════════════════════════════════
# Not-ready admin alert (change feed consumer)
# ════════════════════════════════════════════════════════════════════


class NotReadyAlerts:
    """
    Admin alert for orders that became not_ready.

    Each change event only says "order X changed"; the handler re-reads the
    order and alerts once per (order, response time). Only orders currently
    not_ready are remembered: the entry is dropped as soon as the order
    leaves that state or disappears, so memory stays bounded by the number
    of open not_ready orders.
    """

    def __init__(
        self,
        session_factory,
        *,
        sink: Optional[NotificationSink] = None,
        destination: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.sink = sink
        self.destination = destination
        # order id -> response time already alerted
        self.alerted: dict[int, Optional[datetime]] = {}

    async def on_order_changed(self, event: ChangeEvent) -> None:
        order_id = event.keys.get("id")
        target = self.destination if self.destination is not None else settings.admin_alert_number
        if order_id is None or not target:
            return

        async with self.session_factory() as db:
            order = (await db.execute(select(Order).where(Order.id == order_id))).scalar_one_or_none()

        if not order or order.specialist_readiness_status != ReadinessStatus.NOT_READY.value:
            self.alerted.pop(order_id, None)
            return

        responded_at = order.specialist_readiness_response_at
        if order_id in self.alerted and self.alerted[order_id] == responded_at:
            return
        self.alerted[order_id] = responded_at

        message = (
            f"⚠️ Specialist not ready for order #{order_ref(order)}.\n"
            f"Reason: {order.specialist_not_ready_reason or '-'}\n"
            f"The order needs a new specialist."
        )
        await deliver(self.sink or get_notification_sink(), target, message)


def install_not_ready_alerts(
    session_factory,
    *,
    feed: Optional[ChangeFeed] = None,
    sink: Optional[NotificationSink] = None,
    destination: Optional[str] = None,
):
    """
    Subscribe a NotReadyAlerts handler to order changes.

    Returns:
        Unsubscribe handle.
    """
    alerts = NotReadyAlerts(session_factory, sink=sink, destination=destination)
    return (feed or get_change_feed()).subscribe(TABLE_ORDERS, alerts.on_order_changed)

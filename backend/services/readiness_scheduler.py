"""
Readiness Dispatcher — decides when a specialist must confirm readiness.

Runs as an asyncio background task during the FastAPI app lifespan. Each
cycle:

    1. dispatch_readiness_checks()
       upcoming orders with an assigned specialist and no prompt yet whose
       booking instant is within `readiness_lead_minutes` (and not yet
       passed) → readiness 'pending', readiness_check_sent_at = now,
       prompt sent to the specialist.

    2. send_readiness_reminders()
       orders still 'pending' get a reminder every
       `readiness_reminder_interval_minutes`, up to
       `readiness_reminder_limit`; once the limit is used up and another
       interval passes without an answer the order becomes 'no_response'.

    3. send_movement_reminders()
       orders answered 'ready' whose tracking_stage is still NULL get a
       "start moving" nudge every `movement_reminder_interval_minutes`, up
       to `movement_reminder_limit`, then become 'needs_reassignment'.

Reminders only go to orders whose assigned specialist holds an accepted
candidacy (order_specialists.is_accepted).

Orders booked by named slot (morning/afternoon/evening) have no fixed
instant and are never prompted automatically.
"""
import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import exists, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import async_session
from db_models import Order, OrderSpecialist, Specialist
from domain.booking_time import booking_instant, parse_booking_time
from domain.constants import TABLE_ORDERS
from domain.enums import OrderStatus, ReadinessStatus
from domain.errors import ValidationError
from services.change_feed import ChangeFeed, get_change_feed
from services.notification_service import NotificationSink, deliver, get_notification_sink
from services.order_service import order_ref
from services.scheduler_metrics import get_scheduler_metrics

logger = logging.getLogger(__name__)

# Scheduler state
_scheduler_task: Optional[asyncio.Task] = None
_is_running: bool = False


async def _specialist_phone(db: AsyncSession, specialist_id: Optional[int]) -> Optional[str]:
    if specialist_id is None:
        return None
    result = await db.execute(select(Specialist.phone).where(Specialist.id == specialist_id))
    return result.scalar_one_or_none()


def _accepted_candidacy():
    """The assigned specialist still holds an accepted candidacy for the order."""
    return exists().where(
        OrderSpecialist.order_id == Order.id,
        OrderSpecialist.specialist_id == Order.specialist_id,
        OrderSpecialist.is_accepted.is_(True),
    )


def _booking_start(order: Order) -> Optional[datetime]:
    try:
        parsed = parse_booking_time(order.booking_time)
    except ValidationError:
        logger.warning(f"Order {order.id}: unparseable booking_time {order.booking_time!r}, not prompting")
        return None
    return booking_instant(order.booking_date, parsed)


# ════════════════════════════════════════════════════════════════════
# Prompts
# ════════════════════════════════════════════════════════════════════


async def dispatch_readiness_checks(
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
    sink: Optional[NotificationSink] = None,
    feed: Optional[ChangeFeed] = None,
) -> dict:
    """
    Mark due orders as awaiting readiness and prompt their specialists.

    Returns:
        dict: {checked: int, notified: int, order_ids: list[int]}
    """
    now = now or datetime.utcnow()
    lead = timedelta(minutes=settings.readiness_lead_minutes)
    sink = sink or get_notification_sink()
    feed = feed or get_change_feed()
    metrics = get_scheduler_metrics()

    result = await db.execute(
        select(Order).where(
            Order.status == OrderStatus.UPCOMING.value,
            Order.specialist_id.is_not(None),
            Order.booking_date.is_not(None),
            Order.booking_time.is_not(None),
            Order.readiness_check_sent_at.is_(None),
        )
        .execution_options(populate_existing=True)
    )
    candidates = result.scalars().all()

    prompted: list[int] = []
    for order in candidates:
        start = _booking_start(order)
        if start is None or not (start - lead <= now < start):
            continue

        res = await db.execute(
            update(Order)
            .where(Order.id == order.id, Order.readiness_check_sent_at.is_(None))
            .values(
                readiness_check_sent_at=now,
                specialist_readiness_status=ReadinessStatus.PENDING.value,
                readiness_reminder_count=0,
                readiness_last_reminder_at=None,
                movement_reminder_count=0,
                movement_last_reminder_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if (res.rowcount or 0) == 0:
            continue

        prompted.append(order.id)
        phone = await _specialist_phone(db, order.specialist_id)
        delivered = await deliver(
            sink,
            phone,
            f"⏰ Readiness check: you have order #{order_ref(order)} at "
            f"{start.strftime('%H:%M')}. Are you ready? Please confirm now.",
        )
        metrics.record_prompt(delivered)
        logger.info(f"Readiness check sent for order {order.id} (booking {start.isoformat()})")
        await feed.publish(TABLE_ORDERS, id=order.id)

    return {"checked": len(candidates), "notified": len(prompted), "order_ids": prompted}


async def send_readiness_reminders(
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
    sink: Optional[NotificationSink] = None,
    feed: Optional[ChangeFeed] = None,
) -> dict:
    """
    Remind specialists who have not answered; give up after the limit.

    Returns:
        dict: {reminded: list[int], no_response: list[int]}
    """
    now = now or datetime.utcnow()
    interval = timedelta(minutes=settings.readiness_reminder_interval_minutes)
    limit = settings.readiness_reminder_limit
    cutoff = now - interval
    sink = sink or get_notification_sink()
    feed = feed or get_change_feed()
    metrics = get_scheduler_metrics()

    result = await db.execute(
        select(Order).where(
            Order.status == OrderStatus.UPCOMING.value,
            Order.specialist_readiness_status == ReadinessStatus.PENDING.value,
            Order.readiness_check_sent_at.is_not(None),
            Order.readiness_check_sent_at <= cutoff,
            or_(
                Order.readiness_last_reminder_at.is_(None),
                Order.readiness_last_reminder_at <= cutoff,
            ),
            _accepted_candidacy(),
        )
        .execution_options(populate_existing=True)
    )
    due = result.scalars().all()

    reminded: list[int] = []
    gave_up: list[int] = []
    for order in due:
        count = order.readiness_reminder_count or 0
        guard = (
            Order.id == order.id,
            Order.specialist_readiness_status == ReadinessStatus.PENDING.value,
            Order.readiness_reminder_count == count,
        )

        if count >= limit:
            res = await db.execute(
                update(Order)
                .where(*guard)
                .values(specialist_readiness_status=ReadinessStatus.NO_RESPONSE.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            if res.rowcount:
                gave_up.append(order.id)
                metrics.record_no_response()
                logger.warning(f"Order {order.id} marked no_response after {count} reminders")
                await feed.publish(TABLE_ORDERS, id=order.id)
            continue

        new_count = count + 1
        res = await db.execute(
            update(Order)
            .where(*guard)
            .values(readiness_reminder_count=new_count, readiness_last_reminder_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if not res.rowcount:
            continue

        reminded.append(order.id)
        phone = await _specialist_phone(db, order.specialist_id)
        delivered = await deliver(
            sink,
            phone,
            f"⏰ Reminder {new_count}/{limit}: please confirm your readiness for order #{order_ref(order)}.",
        )
        metrics.record_reminder(delivered)
        await feed.publish(TABLE_ORDERS, id=order.id)

    if reminded or gave_up:
        logger.info(f"Readiness reminders: {len(reminded)} sent, {len(gave_up)} no_response")
    return {"reminded": reminded, "no_response": gave_up}


async def send_movement_reminders(
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
    sink: Optional[NotificationSink] = None,
    feed: Optional[ChangeFeed] = None,
) -> dict:
    """
    Nudge specialists who answered ready but have not started moving.

    An order qualifies while it is upcoming, readiness is 'ready' and
    tracking_stage is still NULL. Once `movement_reminder_limit` nudges are
    used up and another interval passes, readiness becomes
    'needs_reassignment'.

    Returns:
        dict: {reminded: list[int], needs_reassignment: list[int]}
    """
    now = now or datetime.utcnow()
    interval = timedelta(minutes=settings.movement_reminder_interval_minutes)
    limit = settings.movement_reminder_limit
    cutoff = now - interval
    sink = sink or get_notification_sink()
    feed = feed or get_change_feed()
    metrics = get_scheduler_metrics()

    result = await db.execute(
        select(Order).where(
            Order.status == OrderStatus.UPCOMING.value,
            Order.specialist_readiness_status == ReadinessStatus.READY.value,
            Order.tracking_stage.is_(None),
            Order.specialist_readiness_response_at.is_not(None),
            Order.specialist_readiness_response_at <= cutoff,
            or_(
                Order.movement_last_reminder_at.is_(None),
                Order.movement_last_reminder_at <= cutoff,
            ),
            _accepted_candidacy(),
        )
        .execution_options(populate_existing=True)
    )
    due = result.scalars().all()

    reminded: list[int] = []
    escalated: list[int] = []
    for order in due:
        count = order.movement_reminder_count or 0
        guard = (
            Order.id == order.id,
            Order.specialist_readiness_status == ReadinessStatus.READY.value,
            Order.tracking_stage.is_(None),
            Order.movement_reminder_count == count,
        )

        if count >= limit:
            res = await db.execute(
                update(Order)
                .where(*guard)
                .values(specialist_readiness_status=ReadinessStatus.NEEDS_REASSIGNMENT.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            if res.rowcount:
                escalated.append(order.id)
                metrics.record_needs_reassignment()
                logger.warning(f"Order {order.id} needs reassignment after {count} movement reminders")
                await feed.publish(TABLE_ORDERS, id=order.id)
            continue

        new_count = count + 1
        res = await db.execute(
            update(Order)
            .where(*guard)
            .values(movement_reminder_count=new_count, movement_last_reminder_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if not res.rowcount:
            continue

        reminded.append(order.id)
        phone = await _specialist_phone(db, order.specialist_id)
        delivered = await deliver(
            sink,
            phone,
            f"🚗 Reminder {new_count}/{limit}: please press \"Start moving\" for order #{order_ref(order)}.",
        )
        metrics.record_movement_reminder(delivered)
        await feed.publish(TABLE_ORDERS, id=order.id)

    if reminded or escalated:
        logger.info(f"Movement reminders: {len(reminded)} sent, {len(escalated)} need reassignment")
    return {"reminded": reminded, "needs_reassignment": escalated}


# ════════════════════════════════════════════════════════════════════
# Background loop
# ════════════════════════════════════════════════════════════════════


async def run_cycle(session_factory=async_session) -> None:
    """One dispatcher pass: prompts first, then both kinds of reminder."""
    metrics = get_scheduler_metrics()
    started = time.monotonic()
    async with session_factory() as db:
        await dispatch_readiness_checks(db)
        await send_readiness_reminders(db)
        await send_movement_reminders(db)
    metrics.record_cycle(time.monotonic() - started)


async def _scheduler_loop():
    global _is_running

    poll_interval = settings.readiness_poll_seconds
    logger.info(f"Readiness dispatcher started (polling every {poll_interval}s)")

    while _is_running:
        try:
            await run_cycle()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            get_scheduler_metrics().record_cycle_error()
            logger.error(f"Readiness dispatcher cycle failed: {e}", exc_info=True)
        await asyncio.sleep(poll_interval)


async def start():
    """Start the dispatcher as a background asyncio task."""
    global _scheduler_task, _is_running

    if _scheduler_task and not _scheduler_task.done():
        logger.warning("Readiness dispatcher already running")
        return

    _is_running = True
    _scheduler_task = asyncio.create_task(_scheduler_loop())


async def stop():
    """Stop the dispatcher gracefully."""
    global _scheduler_task, _is_running
    _is_running = False

    if _scheduler_task and not _scheduler_task.done():
        _scheduler_task.cancel()
        try:
            await _scheduler_task
        except asyncio.CancelledError:
            pass

    _scheduler_task = None
    logger.info("Readiness dispatcher stopped")


def get_status() -> dict:
    """Dispatcher status for the /scheduler/status endpoint."""
    return {
        "running": _is_running,
        "enabled": settings.readiness_scheduler_enabled,
        "pollIntervalSeconds": settings.readiness_poll_seconds,
        "leadMinutes": settings.readiness_lead_minutes,
        "reminderLimit": settings.readiness_reminder_limit,
        "movementReminderLimit": settings.movement_reminder_limit,
        "metrics": get_scheduler_metrics().to_dict(),
    }

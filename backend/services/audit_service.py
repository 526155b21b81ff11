"""
Order Consistency Auditor — detects and repairs drifted order states.

Each rule is an independent SQL predicate over `orders`. An order matching
several rules is reported once per rule. Rules with a corrective action can
be applied in bulk by fix_all(); the others are flagged for a human
decision.

    rule                            severity  fix
    cancelled_with_stage            high      tracking_stage = NULL
    working_with_waiting_times      high      waiting_* = NULL
    payment_without_completion      medium    status = 'completed'
    completed_without_payment_stage medium    tracking_stage = 'payment_received'
    pending_with_stage              medium    tracking_stage = NULL
    waiting_missing_times           low       flag only
    stuck_in_waiting                high      flag only
    not_ready_still_assigned        medium    flag only

fix_all() re-checks the predicate inside each UPDATE's WHERE clause, so a
row that was legitimately moved on since the scan is skipped, not
overwritten.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from db_models import Order
from domain.constants import TABLE_ORDERS
from domain.enums import OrderStatus, ReadinessStatus, Severity, TrackingStage
from domain.errors import StoreError
from services.change_feed import ChangeFeed, get_change_feed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditRule:
    key: str
    name: str
    severity: Severity
    description: str
    predicate: Callable[[datetime], object]
    fix: Optional[dict] = None

    @property
    def auto_fixable(self) -> bool:
        return self.fix is not None


RULES: tuple[AuditRule, ...] = (
    AuditRule(
        key="cancelled_with_stage",
        name="Cancelled with Tracking Stage",
        severity=Severity.HIGH,
        description="Orders marked as cancelled but still have an active tracking stage",
        predicate=lambda now: and_(
            Order.status == OrderStatus.CANCELLED.value,
            Order.tracking_stage.is_not(None),
        ),
        fix={"tracking_stage": None},
    ),
    AuditRule(
        key="working_with_waiting_times",
        name="Working with Waiting Times",
        severity=Severity.HIGH,
        description="Orders in working stage but still have waiting times set",
        predicate=lambda now: and_(
            Order.tracking_stage == TrackingStage.WORKING.value,
            or_(Order.waiting_started_at.is_not(None), Order.waiting_ends_at.is_not(None)),
        ),
        fix={"waiting_started_at": None, "waiting_ends_at": None},
    ),
    AuditRule(
        key="payment_without_completion",
        name="Payment Received but Not Completed",
        severity=Severity.MEDIUM,
        description="Orders with payment received but status not marked as completed",
        predicate=lambda now: and_(
            Order.tracking_stage == TrackingStage.PAYMENT_RECEIVED.value,
            Order.status != OrderStatus.COMPLETED.value,
        ),
        fix={"status": OrderStatus.COMPLETED.value},
    ),
    AuditRule(
        key="completed_without_payment_stage",
        name="Completed without Payment Stage",
        severity=Severity.MEDIUM,
        description="Orders marked as completed but tracking stage not set to payment_received",
        predicate=lambda now: and_(
            Order.status == OrderStatus.COMPLETED.value,
            or_(
                Order.tracking_stage.is_(None),
                Order.tracking_stage != TrackingStage.PAYMENT_RECEIVED.value,
            ),
        ),
        fix={"tracking_stage": TrackingStage.PAYMENT_RECEIVED.value},
    ),
    AuditRule(
        key="pending_with_stage",
        name="Pending with Tracking Stage",
        severity=Severity.MEDIUM,
        description="Pending orders that have a tracking stage set",
        predicate=lambda now: and_(
            Order.status == OrderStatus.PENDING.value,
            Order.tracking_stage.is_not(None),
        ),
        fix={"tracking_stage": None},
    ),
    AuditRule(
        key="waiting_missing_times",
        name="Waiting without Proper Times",
        severity=Severity.LOW,
        description="Orders in waiting stage but missing start or end times",
        predicate=lambda now: and_(
            Order.tracking_stage == TrackingStage.WAITING.value,
            or_(Order.waiting_started_at.is_(None), Order.waiting_ends_at.is_(None)),
        ),
    ),
    AuditRule(
        key="stuck_in_waiting",
        name="Stuck in Waiting",
        severity=Severity.HIGH,
        description="Orders stuck in waiting stage past the deadline",
        predicate=lambda now: and_(
            Order.tracking_stage == TrackingStage.WAITING.value,
            Order.waiting_ends_at.is_not(None),
            Order.waiting_ends_at < now,
        ),
    ),
    AuditRule(
        key="not_ready_still_assigned",
        name="Not Ready but Still Assigned",
        severity=Severity.MEDIUM,
        description="Specialist answered not ready but is still assigned to the order",
        predicate=lambda now: and_(
            Order.specialist_readiness_status == ReadinessStatus.NOT_READY.value,
            Order.specialist_id.is_not(None),
        ),
    ),
)

RULES_BY_KEY = {rule.key: rule for rule in RULES}


@dataclass
class RuleFinding:
    rule: AuditRule
    orders: list

    @property
    def count(self) -> int:
        return len(self.orders)


@dataclass
class DiagnosticsReport:
    findings: list[RuleFinding]
    checked_at: datetime

    @property
    def total(self) -> int:
        return sum(f.count for f in self.findings)

    def by_rule(self) -> dict[str, RuleFinding]:
        return {f.rule.key: f for f in self.findings}


@dataclass
class FixSummary:
    found: int = 0
    attempted: int = 0
    fixed: int = 0
    skipped: int = 0
    failed: int = 0
    fixes: list[dict] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)


def summarize_order(order: Order) -> dict:
    return {
        "id": order.id,
        "order_number": order.order_number,
        "status": order.status,
        "tracking_stage": order.tracking_stage,
        "waiting_started_at": order.waiting_started_at.isoformat() if order.waiting_started_at else None,
        "waiting_ends_at": order.waiting_ends_at.isoformat() if order.waiting_ends_at else None,
        "specialist_id": order.specialist_id,
        "specialist_readiness_status": order.specialist_readiness_status,
        "created_at": order.created_at.isoformat() if order.created_at else None,
    }


async def run_diagnostics(db: AsyncSession, *, now: Optional[datetime] = None) -> DiagnosticsReport:
    """
    Evaluate every rule. Read-only.

    Only rules with at least one matching order appear in the report.
    """
    now = now or datetime.utcnow()
    findings: list[RuleFinding] = []

    try:
        for rule in RULES:
            result = await db.execute(
                select(Order)
                .where(rule.predicate(now))
                .order_by(Order.id)
                .execution_options(populate_existing=True)
            )
            orders = result.scalars().all()
            if orders:
                findings.append(RuleFinding(rule=rule, orders=list(orders)))
    except SQLAlchemyError as e:
        logger.error(f"Diagnostics query failed: {e}")
        raise StoreError() from e

    report = DiagnosticsReport(findings=findings, checked_at=now)
    logger.info(
        f"Diagnostics: {report.total} issue(s) across {len(findings)} rule(s)"
        + "".join(f"\n  [{f.rule.severity.value}] {f.rule.key}: {f.count}" for f in findings)
    )
    return report


async def fix_all(
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
    feed: Optional[ChangeFeed] = None,
) -> FixSummary:
    """
    Apply every auto-fixable rule to its currently matching orders.

    Rules run in RULES order; each row is committed on its own. Rows that no
    longer match at write time are skipped. Write failures are collected in
    the summary instead of aborting the run.
    """
    now = now or datetime.utcnow()
    feed = feed or get_change_feed()
    summary = FixSummary()
    changed: set[int] = set()

    for rule in RULES:
        if not rule.auto_fixable:
            continue

        try:
            ids = (
                await db.execute(select(Order.id).where(rule.predicate(now)).order_by(Order.id))
            ).scalars().all()
        except SQLAlchemyError as e:
            logger.error(f"Fix scan failed for rule {rule.key}: {e}")
            raise StoreError() from e

        summary.found += len(ids)

        for order_id in ids:
            summary.attempted += 1
            try:
                res = await db.execute(
                    update(Order)
                    .where(Order.id == order_id, rule.predicate(now))
                    .values(**rule.fix, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
            except SQLAlchemyError as e:
                await db.rollback()
                summary.failed += 1
                summary.errors.append({"order_id": order_id, "rule": rule.key, "error": str(e)})
                logger.error(f"❌ Fix {rule.key} failed for order {order_id}: {e}")
                continue

            if (res.rowcount or 0) == 0:
                summary.skipped += 1
                logger.info(f"Fix {rule.key}: order {order_id} no longer matches, skipped")
                continue

            summary.fixed += 1
            summary.fixes.append({"order_id": order_id, "rule": rule.key})
            changed.add(order_id)
            logger.info(f"✅ Fixed order {order_id}: {rule.name}")

    for order_id in sorted(changed):
        await feed.publish(TABLE_ORDERS, id=order_id)

    logger.info(
        f"Fix run: fixed {summary.fixed}/{summary.attempted} "
        f"(skipped {summary.skipped}, failed {summary.failed})"
    )
    return summary

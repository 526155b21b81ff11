"""
Admin order diagnostics — detect and repair inconsistent order states.
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from deps import change_feed
from domain.responses import success_response
from services import audit_service
from services.change_feed import ChangeFeed

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/admin/orders/diagnostics", tags=["diagnostics"])


@router.get("")
async def run_diagnostics(db: AsyncSession = Depends(get_db)):
    report = await audit_service.run_diagnostics(db)
    return success_response(
        data={
            "issues": [
                {
                    "rule": f.rule.key,
                    "name": f.rule.name,
                    "severity": f.rule.severity.value,
                    "description": f.rule.description,
                    "auto_fixable": f.rule.auto_fixable,
                    "count": f.count,
                    "orders": [audit_service.summarize_order(o) for o in f.orders],
                }
                for f in report.findings
            ],
            "total": report.total,
        },
        meta={"checked_at": report.checked_at.isoformat()},
    )


@router.post("/fix")
async def fix_all(
    db: AsyncSession = Depends(get_db),
    feed: ChangeFeed = Depends(change_feed),
):
    summary = await audit_service.fix_all(db, feed=feed)
    return success_response(
        data={
            "found": summary.found,
            "attempted": summary.attempted,
            "fixed": summary.fixed,
            "skipped": summary.skipped,
            "failed": summary.failed,
            "fixes": summary.fixes,
            "errors": summary.errors or None,
        }
    )

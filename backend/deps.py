"""
Shared FastAPI dependencies.

Routers import collaborators from here so tests can swap them through
app.dependency_overrides (DB session, notification sink, change feed).
"""

from __future__ import annotations

from typing import TypedDict

from fastapi import Query

from database import get_db  # noqa: F401  (re-exported for routers)
from services.change_feed import ChangeFeed, get_change_feed
from services.notification_service import NotificationSink, get_notification_sink


class Pagination(TypedDict):
    limit: int
    offset: int


def pagination_params(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0, le=100_000),
) -> Pagination:
    return {"limit": limit, "offset": offset}


def notification_sink() -> NotificationSink:
    return get_notification_sink()


def change_feed() -> ChangeFeed:
    return get_change_feed()

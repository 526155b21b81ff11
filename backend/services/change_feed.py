"""
Change Feed — in-process row-change notifications for the Order Store.

Services publish after a successful commit; subscribers register per table
with an optional key filter. An event carries only the table name and the
key columns of the changed row. It is a "something changed, re-read"
signal: delivery is at-least-once, may be out of order, and subscribers
must re-fetch authoritative state instead of merging payloads.
"""
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    keys: dict[str, Any] = field(default_factory=dict)


Callback = Callable[[ChangeEvent], Union[None, Awaitable[None]]]


@dataclass
class _Subscription:
    table: str
    filters: dict[str, Any]
    callback: Callback

    def matches(self, event: ChangeEvent) -> bool:
        if event.table != self.table:
            return False
        return all(event.keys.get(k) == v for k, v in self.filters.items())


class ChangeFeed:
    """Table-scoped publish/subscribe hub."""

    def __init__(self) -> None:
        self._subscriptions: list[_Subscription] = []

    def subscribe(
        self,
        table: str,
        callback: Callback,
        filters: dict[str, Any] | None = None,
    ) -> Callable[[], None]:
        """
        Register `callback` for changes on `table` matching `filters`.

        Returns:
            Zero-argument unsubscribe handle (safe to call twice).
        """
        sub = _Subscription(table=table, filters=dict(filters or {}), callback=callback)
        self._subscriptions.append(sub)

        def unsubscribe() -> None:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)

        return unsubscribe

    async def publish(self, table: str, **keys: Any) -> int:
        """
        Deliver a ChangeEvent to every matching subscriber.

        Subscriber exceptions are logged and never propagate to the publisher.

        Returns:
            Number of subscribers notified without error.
        """
        event = ChangeEvent(table=table, keys=keys)
        delivered = 0
        for sub in list(self._subscriptions):
            if not sub.matches(event):
                continue
            try:
                result = sub.callback(event)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception as e:
                logger.warning(f"Change subscriber failed for {table} {keys}: {e}", exc_info=True)
        return delivered

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)


# Singleton feed instance
_feed: ChangeFeed | None = None


def get_change_feed() -> ChangeFeed:
    global _feed
    if _feed is None:
        _feed = ChangeFeed()
    return _feed

import logging
from collections import defaultdict
from typing import Any, Callable, DefaultDict, List

RECEIPT_CREATED = "receiptCreated"
RECEIPT_UPDATED = "receiptUpdated"
RECEIPT_DELETED = "receiptDeleted"
MEMBER_DATA_UPDATED = "memberDataUpdated"

EVENTS = (RECEIPT_CREATED, RECEIPT_UPDATED, RECEIPT_DELETED, MEMBER_DATA_UPDATED)


class EventBus:
    """Refresh notifications for views that show receipts or member dues.

    Events are published after the database commit. Subscribers may see the same event more
    than once and should simply reload.
    """

    def __init__(self) -> None:
        self._subscribers: DefaultDict[str, List[Callable[[Any], None]]] = defaultdict(list)

    def subscribe(self, event: str, callback: Callable[[Any], None]) -> None:
        if event not in EVENTS:
            raise ValueError(f"Unknown event: {event}")
        if callback not in self._subscribers[event]:
            self._subscribers[event].append(callback)

    def unsubscribe(self, event: str, callback: Callable[[Any], None]) -> None:
        if callback in self._subscribers[event]:
            self._subscribers[event].remove(callback)

    def publish(self, event: str, payload: Any = None) -> int:
        """Calls every subscriber; returns how many ran without raising."""
        delivered = 0
        for callback in list(self._subscribers[event]):
            try:
                callback(payload)
                delivered += 1
            except Exception as e:
                logging.error(f"Subscriber for '{event}' failed: {e}", exc_info=True)
        return delivered

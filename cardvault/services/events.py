"""
Post-commit event delivery and audit trail.

Achievements, XP and notifications subscribe here. Events are emitted
only after a commit has landed, and a failing subscriber is logged and
ignored: it can never undo or block the commit that produced the event.
"""

import json
import logging
from collections.abc import Callable
from threading import RLock
from typing import Any

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("cardvault.audit")

INSTANCE_MINTED = "instance.minted"
INSTANCE_TRANSFERRED = "instance.transferred"
INSTANCE_RETIRED = "instance.retired"
LISTING_CREATED = "listing.created"
LISTING_CLOSED = "listing.closed"
OFFER_CREATED = "offer.created"
OFFER_CLOSED = "offer.closed"
TRADE_CREATED = "trade.created"
TRADE_CLOSED = "trade.closed"
GRADING_REQUESTED = "grading.requested"
GRADING_COMPLETED = "grading.completed"
GRADING_REVEALED = "grading.revealed"

Handler = Callable[..., Any]


class EventBus:
    """Threadsafe publish/subscribe bus. Handlers run synchronously in emit order."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = {}
        self._lock = RLock()

    def subscribe(self, event: str, handler: Handler) -> None:
        with self._lock:
            handlers = self._handlers.setdefault(event, [])
            if handler not in handlers:
                handlers.append(handler)
                logger.debug("Subscribed handler %s to event '%s'", handler, event)

    def unsubscribe(self, event: str, handler: Handler) -> None:
        with self._lock:
            handlers = self._handlers.get(event)
            if not handlers:
                return
            if handler in handlers:
                handlers.remove(handler)
            if not handlers:
                del self._handlers[event]

    def clear(self) -> None:
        """Remove all handlers for all events (useful in tests)."""
        with self._lock:
            self._handlers.clear()

    def emit(self, event: str, **payload: Any) -> int:
        """
        Deliver an event to every subscriber.

        Returns the number of handlers that completed without raising.
        """
        with self._lock:
            handlers = list(self._handlers.get(event, []))
        if not handlers:
            logger.debug("Emitting '%s' with no subscribers", event)
            return 0

        delivered = 0
        for handler in handlers:
            try:
                handler(**payload)
                delivered += 1
            except Exception:
                logger.exception("Event handler %s failed for '%s'", handler, event)
        return delivered


_event_bus = EventBus()


def get_event_bus() -> EventBus:
    """Get the process-wide event bus."""
    return _event_bus


def log_audit(action: str, **details: Any) -> None:
    """Write one audit line for a committed state change."""
    audit_logger.info("ACTION: %s DETAILS: %s", action, json.dumps(details, default=str))

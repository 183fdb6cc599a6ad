"""
Settlement lifecycle events
In-process publish/subscribe for payment and settlement signals

Notification and webhook collaborators subscribe here; the settlement engine
itself subscribes to payment.confirmed to create settlements.
"""

import logging
from collections import defaultdict
from enum import Enum
from typing import Awaitable, Callable, Dict, List

from pydantic import BaseModel

log = logging.getLogger(__name__)


class SettlementEventType(str, Enum):
    PAYMENT_CONFIRMED = "payment.confirmed"
    PAYMENT_SETTLING = "payment.settling"
    PAYMENT_SETTLED = "payment.settled"
    PAYMENT_FAILED = "payment.failed"


EventHandler = Callable[[BaseModel], Awaitable[None]]


class SettlementEventPublisher:
    """
    Fan out lifecycle events to async subscribers.

    Handlers run in subscription order. A failing handler is logged and
    skipped; it never interrupts the settlement lifecycle or other handlers.
    """

    def __init__(self):
        self._subscribers: Dict[SettlementEventType, List[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: SettlementEventType, handler: EventHandler) -> None:
        self._subscribers[SettlementEventType(event_type)].append(handler)
        log.debug(f"Subscribed {getattr(handler, '__qualname__', handler)} to {event_type}")

    def unsubscribe(self, event_type: SettlementEventType, handler: EventHandler) -> None:
        handlers = self._subscribers.get(SettlementEventType(event_type), [])
        if handler in handlers:
            handlers.remove(handler)

    def subscriber_count(self, event_type: SettlementEventType) -> int:
        return len(self._subscribers.get(SettlementEventType(event_type), []))

    async def publish(self, event_type: SettlementEventType, payload: BaseModel) -> int:
        """Deliver payload to every subscriber; returns how many handled it cleanly"""
        event_type = SettlementEventType(event_type)
        delivered = 0
        for handler in list(self._subscribers.get(event_type, [])):
            try:
                await handler(payload)
                delivered += 1
            except Exception as e:
                log.exception(f"Subscriber {getattr(handler, '__qualname__', handler)} failed on {event_type.value}: {e}")
        return delivered

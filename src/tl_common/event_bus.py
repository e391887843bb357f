"""In-process event bus for upstream payment events.

publish() awaits every handler in subscription order and lets the first
failure propagate, so a publisher (e.g. the reconciliation job re-emitting a
missed "payment.confirmed") learns whether the downstream posting happened.
"""

import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], Awaitable[Any]]

PAYMENT_CONFIRMED = "payment.confirmed"
PAYMENT_REVERSED = "payment.reversed"


class EventBus:
    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        """Register handler; returns a callable that removes it again."""
        self._handlers[topic].append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers[topic]:
                self._handlers[topic].remove(handler)

        return unsubscribe

    def handler_count(self, topic: str) -> int:
        return len(self._handlers.get(topic, []))

    async def publish(self, topic: str, payload: dict[str, Any]) -> int:
        """Dispatch payload to all handlers of topic. Returns the number of handlers run."""
        handlers = list(self._handlers.get(topic, []))
        if not handlers:
            logger.warning("No subscribers for event %s", topic)
        for handler in handlers:
            await handler(payload)
        logger.debug("Published %s to %d handler(s)", topic, len(handlers))
        return len(handlers)

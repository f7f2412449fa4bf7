"""
Typed publish/subscribe bus shared by the checkout components.

Components receive the bus they publish on instead of reaching for module
globals, so each checkout session gets its own listeners.
"""
import asyncio
import inspect
import logging
from collections import defaultdict
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Union

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Union[None, Awaitable[None]]]


class CheckoutEvent(str, Enum):
    PAYMENT_CREATED = "payment.created"
    PAYMENT_CONFIRMED = "payment.confirmed"
    PAYMENT_EXPIRED = "payment.expired"
    CHANNEL_CHANGED = "channel.changed"
    NOTICE = "notice"


class EventBus:
    def __init__(self):
        self._handlers: Dict[CheckoutEvent, List[Handler]] = defaultdict(list)

    def subscribe(self, event: CheckoutEvent, handler: Handler) -> Callable[[], None]:
        self._handlers[event].append(handler)

        def unsubscribe():
            if handler in self._handlers[event]:
                self._handlers[event].remove(handler)

        return unsubscribe

    async def publish(self, event: CheckoutEvent, payload: Any = None):
        for handler in list(self._handlers[event]):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                # a broken listener must not stop the others
                logger.exception("Handler for %s failed", event.value)

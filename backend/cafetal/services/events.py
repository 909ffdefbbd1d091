"""In-process domain events between the billing state machines.

Handlers run synchronously, in registration order, inside the caller's
transaction: a handler failure rolls back the change that published
the event.

    @subscribe(PaymentCompleted)
    async def on_payment_completed(db, ctx, event): ...

    await publish(db, ctx, PaymentCompleted(payment_id=..., subscription_id=...))
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from cafetal.services.context import RequestContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentCompleted:
    payment_id: str
    coffee_grower_id: str
    subscription_id: str | None = None


Handler = Callable[[AsyncSession, RequestContext, object], Awaitable[None]]

_handlers: dict[type, list[Handler]] = defaultdict(list)


def subscribe(event_type: type):
    """Decorator registering an async handler for ``event_type``."""

    def decorator(func: Handler) -> Handler:
        if func not in _handlers[event_type]:
            _handlers[event_type].append(func)
        return func

    return decorator


def handlers_for(event_type: type) -> list[Handler]:
    return list(_handlers.get(event_type, ()))


async def publish(db: AsyncSession, ctx: RequestContext, event: object) -> None:
    handlers = handlers_for(type(event))
    if not handlers:
        logger.debug("No handlers for %s", type(event).__name__)
        return
    for handler in handlers:
        logger.debug("Dispatching %s to %s", type(event).__name__, handler.__qualname__)
        await handler(db, ctx, event)

"""Event-type → handler registry shared by live delivery and webhook recovery."""

import logging
from collections.abc import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from creditsync.services.stripe_schemas import StripeEvent

logger = logging.getLogger(__name__)

WebhookHandlerFn = Callable[[AsyncSession, StripeEvent], Awaitable[None]]


class WebhookDispatcher:
    """
    Routes a verified Stripe event to the handler registered for its type.

    Handlers are registered once when the service graph is built. Unknown
    event types are logged and ignored so Stripe does not retry events we
    never subscribed to on purpose.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, WebhookHandlerFn] = {}

    def register(self, event_type: str, handler: WebhookHandlerFn) -> None:
        if event_type in self._handlers:
            raise ValueError(f"Handler already registered for {event_type}")
        self._handlers[event_type] = handler

    def handles(self, event_type: str) -> bool:
        return event_type in self._handlers

    @property
    def event_types(self) -> list[str]:
        return sorted(self._handlers)

    async def dispatch(self, db: AsyncSession, event: StripeEvent) -> bool:
        """Run the handler for `event`. Returns False when no handler exists."""
        handler = self._handlers.get(event.type)
        if handler is None:
            logger.info(f"Unhandled webhook event type: {event.type} ({event.id})")
            return False

        logger.info(f"Processing webhook event: {event.type} ({event.id})")
        await handler(db, event)
        return True

"""Dispatch authenticated events to their handler by type tag."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from billing_engine.handlers import Handler, HandlerResult
from billing_engine.models.billing import EventOutcome
from billing_engine.models.events import CONSUMED_EVENT_TYPES

logger = logging.getLogger(__name__)


class EventRouter:
    """Exhaustive type-tag → handler table.

    The table must cover every consumed event type, no more and no fewer.
    Types outside the table are acknowledged as no-ops so the provider does
    not redeliver them.  Handler errors are not caught here.
    """

    def __init__(self, handlers: Mapping[str, Handler]) -> None:
        missing = CONSUMED_EVENT_TYPES - set(handlers)
        extra = set(handlers) - CONSUMED_EVENT_TYPES
        if missing or extra:
            raise ValueError(f"Handler table mismatch: missing={sorted(missing)} extra={sorted(extra)}")
        self._handlers = dict(handlers)

    async def dispatch(self, event: Any, account_id: str | None) -> HandlerResult:
        event_type = getattr(event, "type", None)
        handler = self._handlers.get(event_type) if event_type else None
        if handler is None:
            logger.debug("Acknowledging unhandled event type %s (id=%s)", event_type, getattr(event, "id", None))
            return EventOutcome.IGNORED, f"event type {event_type} not consumed"
        if account_id is None:
            raise ValueError(f"{event_type} requires a resolved account")
        return await handler(event, account_id)

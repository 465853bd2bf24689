"""End-to-end processing of one inbound webhook.

Authenticate → parse → resolve account → hold the per-account lock →
dispatch → commit.  Each event runs in its own transaction; any error that
escapes a handler rolls it back and propagates so the provider redelivers.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.config import BillingEngineSettings
from billing_engine.errors import EventValidationError, StaleEventError
from billing_engine.gateway import PaymentGateway
from billing_engine.handlers import BillingEventHandlers
from billing_engine.ingress import EventAuthenticator, parse_event
from billing_engine.locking import AccountLockRegistry
from billing_engine.models.billing import EventOutcome, ProcessingResult
from billing_engine.models.events import CONSUMED_EVENT_TYPES
from billing_engine.router import EventRouter
from billing_engine.state.database import acquire_account_lock
from billing_engine.telemetry import record_event

logger = logging.getLogger(__name__)


class WebhookProcessor:
    """Apply signed provider events to the local billing state.

    Parameters
    ----------
    authenticator:
        Signature verifier for inbound requests.
    session_factory:
        Factory for the per-event database session.
    gateway:
        Payment provider client passed to the handlers.
    settings:
        Engine settings.
    locks:
        Per-account lock registry; share one instance per process.
    clock:
        Optional "now" override for the handlers.
    """

    def __init__(
        self,
        authenticator: EventAuthenticator,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        settings: BillingEngineSettings,
        locks: AccountLockRegistry | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._authenticator = authenticator
        self._session_factory = session_factory
        self._gateway = gateway
        self._settings = settings
        self._locks = locks or AccountLockRegistry()
        self._clock = clock

    async def process(self, payload: bytes, signature: str | None) -> ProcessingResult:
        """Process one webhook delivery.

        Raises
        ------
        AuthenticationError
            Before anything is read or written.
        TransientExternalError
            A provider call failed; the transaction was rolled back.
        """
        try:
            raw = self._authenticator.verify(payload, signature)
        except EventValidationError as exc:
            return self._rejected(exc, None, None, None)
        event_type = raw.get("type") if isinstance(raw.get("type"), str) else None
        event_id = raw.get("id") if isinstance(raw.get("id"), str) else None

        try:
            event = parse_event(raw)
        except EventValidationError as exc:
            return self._rejected(exc, event_id, event_type, None)

        if event_type not in CONSUMED_EVENT_TYPES:
            logger.debug("Acknowledging unconsumed event type %s (id=%s)", event_type, event_id)
            record_event(event_type, EventOutcome.IGNORED.value)
            return ProcessingResult(
                event_id=event_id,
                event_type=event_type,
                outcome=EventOutcome.IGNORED,
                detail=f"event type {event_type} not consumed",
            )

        async with self._session_factory() as session:
            handlers = BillingEventHandlers(session, self._gateway, self._settings, clock=self._clock)
            router = EventRouter(handlers.table())

            account_id: str | None = None
            try:
                account_id = await handlers.resolve_account(event)
                if account_id is None:
                    await session.rollback()
                    logger.info("No local account for %s %s; acknowledging", event_type, event_id)
                    record_event(event_type, EventOutcome.IGNORED.value)
                    return ProcessingResult(
                        event_id=event_id,
                        event_type=event_type,
                        outcome=EventOutcome.IGNORED,
                        detail="account not found",
                    )

                async with self._locks.hold(account_id):
                    await acquire_account_lock(session, account_id)
                    outcome, detail = await router.dispatch(event, account_id)
                    await session.commit()
            except StaleEventError as exc:
                await session.rollback()
                logger.warning("Rejected stale %s %s: %s", event_type, event_id, exc)
                record_event(event_type, EventOutcome.STALE.value)
                return ProcessingResult(
                    event_id=event_id,
                    event_type=event_type,
                    account_id=account_id,
                    outcome=EventOutcome.STALE,
                    detail=str(exc),
                )
            except EventValidationError as exc:
                await session.rollback()
                return self._rejected(exc, event_id, event_type, account_id)
            except Exception:
                await session.rollback()
                record_event(event_type, "failed")
                logger.exception("Failed to process %s %s for account %s", event_type, event_id, account_id)
                raise

        record_event(event_type, outcome.value)
        logger.info("Processed %s %s for account %s: %s", event_type, event_id, account_id, detail)
        return ProcessingResult(
            event_id=event_id,
            event_type=event_type,
            account_id=account_id,
            outcome=outcome,
            detail=detail,
        )

    def _rejected(
        self,
        exc: EventValidationError,
        event_id: str | None,
        event_type: str | None,
        account_id: str | None,
    ) -> ProcessingResult:
        outcome = EventOutcome.QUARANTINED if exc.quarantined else EventOutcome.DROPPED
        record_event(event_type, outcome.value)
        if exc.quarantined:
            logger.error(
                "Quarantined %s %s: %s",
                event_type,
                event_id,
                exc,
                extra={"billing": {"event_id": event_id, "account_id": account_id, "reason": str(exc)}},
            )
        else:
            logger.warning("Dropped %s %s: %s", event_type, event_id, exc)
        return ProcessingResult(
            event_id=event_id,
            event_type=event_type,
            account_id=account_id,
            outcome=outcome,
            detail=str(exc),
        )

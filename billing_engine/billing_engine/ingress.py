"""Inbound event authentication and typed parsing.

Nothing in a request body is trusted until its signature has been verified
against the shared webhook secret.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from pydantic import ValidationError

from billing_engine.errors import AuthenticationError, EventValidationError
from billing_engine.models.events import (
    BILLING_EVENT_ADAPTER,
    CONSUMED_EVENT_TYPES,
    BillingEvent,
    UnrecognizedEvent,
)

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_SECONDS = 300


class EventAuthenticator:
    """Verify the provider's HMAC-SHA256 signature header.

    Parameters
    ----------
    secret:
        Shared webhook signing secret.  When empty every request is
        rejected.
    tolerance:
        Maximum age in seconds of the signed timestamp.
    """

    def __init__(self, secret: str | None, tolerance: int = DEFAULT_TOLERANCE_SECONDS) -> None:
        self._secret = secret or ""
        self._tolerance = tolerance

    def _get_stripe(self) -> Any:
        import stripe

        return stripe

    def verify(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        """Return the decoded event body if *signature* is valid.

        Raises
        ------
        AuthenticationError
            Missing secret, missing header, or signature mismatch.
        EventValidationError
            The authentic body is not a JSON object.
        """
        if not self._secret:
            logger.warning("Webhook secret not configured; rejecting event")
            raise AuthenticationError("webhook secret is not configured")
        if not signature:
            logger.warning("Webhook request without signature header")
            raise AuthenticationError("missing signature header")

        stripe = self._get_stripe()
        try:
            body = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(body, signature, self._secret, self._tolerance)
        except (UnicodeDecodeError, stripe.SignatureVerificationError) as exc:
            logger.warning("Webhook signature verification failed: %s", exc)
            raise AuthenticationError("invalid signature") from exc

        try:
            decoded = json.loads(body)
        except ValueError as exc:
            raise EventValidationError(f"event body is not valid JSON: {exc}", quarantined=True) from exc
        if not isinstance(decoded, dict):
            raise EventValidationError("event body is not a JSON object", quarantined=True)
        return decoded


def parse_event(raw: dict[str, Any]) -> BillingEvent | UnrecognizedEvent:
    """Validate *raw* against the variant declared by its ``type`` tag.

    Types this engine does not consume parse as :class:`UnrecognizedEvent`.

    Raises
    ------
    EventValidationError
        (quarantined) if a consumed type does not match its declared shape.
    """
    event_type = raw.get("type")
    if event_type not in CONSUMED_EVENT_TYPES:
        return UnrecognizedEvent(id=raw.get("id"), type=str(event_type or ""))
    try:
        return BILLING_EVENT_ADAPTER.validate_python(raw)
    except ValidationError as exc:
        raise EventValidationError(
            f"{event_type} {raw.get('id')} does not match its schema: {exc.error_count()} error(s)",
            quarantined=True,
        ) from exc

"""Inbound payment-provider webhooks.

The endpoint is authenticated by the ``Stripe-Signature`` header rather than
a bearer token.  Every authenticated delivery is acknowledged with HTTP 200,
including ones that were ignored, dropped or quarantined; only signature
failures (400) and provider or database errors (502/500) make the provider
redeliver.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request

from api.dependencies import ProcessorDep
from api.schemas import WebhookAckResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


@router.post("/webhooks", response_model=WebhookAckResponse)
async def stripe_webhook(request: Request, processor: ProcessorDep) -> WebhookAckResponse:
    """Apply one signed provider event to the local billing state."""
    body = await request.body()
    signature = request.headers.get("stripe-signature")

    result = await processor.process(body, signature)
    return WebhookAckResponse(
        status=result.outcome.value,
        event_id=result.event_id,
        event_type=result.event_type,
        detail=result.detail,
    )

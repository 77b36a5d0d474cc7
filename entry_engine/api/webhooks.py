"""Payment gateway webhook endpoint."""

from typing import Annotated

from fastapi import APIRouter, Header, Request

from entry_engine.api.deps import Reconciliation
from entry_engine.schemas import ErrorResponse, WebhookAckResponse

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post(
    "/payment-events",
    response_model=WebhookAckResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Signature verification failed"},
        500: {"model": ErrorResponse, "description": "Event not applied; the gateway retries"},
        503: {"model": ErrorResponse, "description": "Webhook secret not configured"},
    },
)
async def payment_events(
    request: Request,
    engine: Reconciliation,
    stripe_signature: Annotated[str | None, Header()] = None,
):
    """Receive a payment gateway event.

    The raw body is verified against the signing secret before parsing.
    Events that were already processed, or that reference a missing or
    terminal record, are acknowledged with 200 so the gateway stops
    retrying.
    """
    payload = await request.body()
    result = await engine.handle(payload, stripe_signature)
    return WebhookAckResponse(
        event_id=result.event_id,
        kind=result.kind,
        outcome=result.outcome.value,
    )

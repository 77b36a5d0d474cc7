"""Tournament entry API endpoints."""

from fastapi import APIRouter, status

from entry_engine.api.deps import Reservations
from entry_engine.schemas import (
    CapacityFullResponse,
    EntryRequest,
    EntryResponse,
    ErrorResponse,
    ReservationResponse,
    WaitlistedResponse,
)
from entry_engine.services.reservation import ReservationOutcome, ReservationResult
from entry_engine.utils.json_utils import ORJSONResponse

router = APIRouter(prefix="/entries", tags=["Entries"])


def reservation_response(result: ReservationResult) -> ORJSONResponse:
    """Map a reservation outcome to its status code and body."""
    if result.outcome == ReservationOutcome.WAITLISTED:
        body = WaitlistedResponse(row_id=result.waitlist_row_id, position=result.waitlist_position)
        return ORJSONResponse(status_code=status.HTTP_202_ACCEPTED, content=body.model_dump(mode="json"))

    if result.outcome == ReservationOutcome.FULL:
        body = CapacityFullResponse(max_slots=result.max_slots, current=result.current)
        return ORJSONResponse(status_code=status.HTTP_409_CONFLICT, content=body.model_dump(mode="json"))

    entry = EntryResponse.model_validate(result.entry) if result.entry is not None else None
    if result.outcome == ReservationOutcome.ALREADY_REGISTERED:
        body = ReservationResponse(
            already_registered=True,
            checkout_url=result.checkout_url,
            amount_cents=result.amount_cents,
            entry=entry,
        )
    elif result.outcome == ReservationOutcome.COMPED:
        body = ReservationResponse(comped=True, amount_cents=0, entry=entry)
    else:
        body = ReservationResponse(
            checkout_url=result.checkout_url,
            amount_cents=result.amount_cents,
            entry=entry,
        )
    return ORJSONResponse(content=body.model_dump(mode="json", exclude_none=True))


@router.post(
    "",
    response_model=ReservationResponse,
    response_model_exclude_none=True,
    responses={
        202: {"model": WaitlistedResponse, "description": "Tournament full, user waitlisted"},
        400: {"model": ErrorResponse, "description": "Missing userId or tournamentId"},
        409: {"model": CapacityFullResponse, "description": "Tournament full"},
        502: {"model": ErrorResponse, "description": "Checkout could not be created"},
        503: {"model": ErrorResponse, "description": "Tournament busy or gateway not configured"},
    },
)
async def create_entry(request_body: EntryRequest, reservations: Reservations):
    """Reserve a tournament slot.

    Members of the comped tiers are entered immediately. Everyone else holds
    a pending slot and receives a checkout URL; the entry becomes paid when
    the payment event arrives. A full tournament answers 409, or 202 with a
    waitlist position when `joinWaitlistIfFull` is set.
    """
    result = await reservations.attempt_reserve(
        request_body.tournament_id,
        request_body.user_id,
        payer_contact=request_body.payer_contact,
        join_waitlist_if_full=request_body.join_waitlist_if_full,
    )
    return reservation_response(result)

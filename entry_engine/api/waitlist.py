"""Waitlist API endpoints."""

from fastapi import APIRouter, status

from entry_engine.api.deps import Promotions, Reservations
from entry_engine.schemas import (
    ErrorResponse,
    WaitlistedResponse,
    WaitlistJoinRequest,
    WaitlistRowResponse,
)

router = APIRouter(prefix="/tournaments", tags=["Waitlist"])


@router.post(
    "/{tournament_id}/waitlist",
    response_model=WaitlistedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={
        400: {"model": ErrorResponse, "description": "Missing userId"},
        503: {"model": ErrorResponse, "description": "Tournament busy"},
    },
)
async def join_waitlist(
    tournament_id: str,
    request_body: WaitlistJoinRequest,
    reservations: Reservations,
):
    """Queue for a tournament. Joining twice returns the existing row."""
    row_id, position = await reservations.join_waitlist(tournament_id, request_body.user_id)
    return WaitlistedResponse(row_id=row_id, position=position)


@router.delete(
    "/{tournament_id}/waitlist/{user_id}",
    response_model=WaitlistRowResponse,
    responses={
        404: {"model": ErrorResponse, "description": "No active waitlist row"},
    },
)
async def leave_waitlist(tournament_id: str, user_id: str, promotions: Promotions):
    """Leave the waitlist. An outstanding offer frees its slot for the next row."""
    row = await promotions.withdraw(tournament_id, user_id)
    return WaitlistRowResponse.model_validate(row)

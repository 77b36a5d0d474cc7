"""Membership API endpoints."""

from fastapi import APIRouter, Query

from entry_engine.api.deps import AppSettings, DbSession, Gateway, TraceId
from entry_engine.schemas import (
    ErrorResponse,
    MembershipCheckoutRequest,
    MembershipPortalRequest,
    MembershipStatusResponse,
    UrlResponse,
)
from entry_engine.services.membership import MembershipBilling, MembershipService

router = APIRouter(prefix="/membership", tags=["Membership"])


@router.get(
    "/status",
    response_model=MembershipStatusResponse,
    responses={400: {"model": ErrorResponse, "description": "Missing userId"}},
)
async def get_membership_status(
    db: DbSession,
    user_id: str = Query(..., min_length=1, max_length=100, alias="userId"),
):
    """Current tier and subscription status; unknown users are nonmembers."""
    view = await MembershipService(db).get_status(user_id)
    return MembershipStatusResponse.model_validate(view)


@router.post(
    "/checkout",
    response_model=UrlResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Unknown tier"},
        502: {"model": ErrorResponse, "description": "Checkout could not be created"},
    },
)
async def create_membership_checkout(
    request_body: MembershipCheckoutRequest,
    db: DbSession,
    settings: AppSettings,
    gateway: Gateway,
    trace_id: TraceId,
):
    """Start a subscription checkout. Membership changes once the payment event arrives."""
    url = await MembershipBilling(db, settings, gateway).start_checkout(
        request_body.user_id,
        request_body.tier,
        email=request_body.email,
        request_id=trace_id,
    )
    return UrlResponse(url=url)


@router.post(
    "/portal",
    response_model=UrlResponse,
    responses={
        400: {"model": ErrorResponse, "description": "User has no billing account"},
        502: {"model": ErrorResponse, "description": "Portal session could not be created"},
    },
)
async def create_membership_portal(
    request_body: MembershipPortalRequest,
    db: DbSession,
    settings: AppSettings,
    gateway: Gateway,
):
    url = await MembershipBilling(db, settings, gateway).portal_url(
        request_body.user_id,
        return_url=request_body.return_url,
    )
    return UrlResponse(url=url)

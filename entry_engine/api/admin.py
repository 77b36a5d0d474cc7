"""Admin API endpoints.

Every route requires the `X-Admin-Key` header.
"""

from datetime import datetime

from fastapi import APIRouter, Query, Response

from entry_engine.api.deps import AdminKey, AppClock, AppSettings, DbSession, Promotions, Reservations
from entry_engine.models.waitlist import WaitlistStatus
from entry_engine.schemas import (
    CancelEntryResponse,
    ErrorResponse,
    HallSettingsRequest,
    HallSettingsResponse,
    PromotionResponse,
    TournamentSnapshotResponse,
    TournamentUpdateRequest,
    WaitlistListResponse,
    WaitlistRowResponse,
)
from entry_engine.services.halls import HallSettingsService
from entry_engine.services.promotion import PromotionResult
from entry_engine.services.reservation import TournamentSnapshot
from entry_engine.services.revenue import RevenueReport, detail_csv, summary_csv
from entry_engine.services.waitlist import WaitlistQueue
from entry_engine.utils.errors import ValidationError

router = APIRouter(
    prefix="/admin",
    tags=["Admin"],
    dependencies=[AdminKey],
    responses={401: {"model": ErrorResponse, "description": "Admin credential required"}},
)


def promotion_response(result: PromotionResult | None) -> PromotionResponse:
    if result is None:
        return PromotionResponse(ok=False, reason="not_attempted")
    if result.promoted:
        return PromotionResponse(
            ok=True,
            promoted=result.outcome.value,
            user_id=result.user_id,
            url=result.url,
            expires_at=result.expires_at,
        )
    return PromotionResponse(ok=False, reason=result.outcome.value)


def snapshot_response(snapshot: TournamentSnapshot) -> TournamentSnapshotResponse:
    return TournamentSnapshotResponse(
        tournament_id=snapshot.tournament_id,
        hall_id=snapshot.hall_id,
        max_slots=snapshot.max_slots,
        held=snapshot.held,
        confirmed=snapshot.confirmed,
        is_open=snapshot.is_open,
        waiting=snapshot.waiting,
    )


# =============================================================================
# Tournaments
# =============================================================================


@router.post(
    "/tournaments/{tournament_id}/promote-next",
    response_model=PromotionResponse,
    response_model_exclude_none=True,
    responses={
        502: {"model": ErrorResponse, "description": "Offer checkout could not be created"},
        503: {"model": ErrorResponse, "description": "Tournament busy"},
    },
)
async def promote_next(tournament_id: str, promotions: Promotions):
    """Offer the next freed slot to the oldest waiting user."""
    return promotion_response(await promotions.promote_next(tournament_id))


@router.get(
    "/tournaments/{tournament_id}",
    response_model=TournamentSnapshotResponse,
    responses={404: {"model": ErrorResponse, "description": "Tournament not found"}},
)
async def get_tournament(tournament_id: str, reservations: Reservations):
    return snapshot_response(await reservations.snapshot(tournament_id))


@router.put(
    "/tournaments/{tournament_id}",
    response_model=TournamentSnapshotResponse,
    responses={400: {"model": ErrorResponse, "description": "Cap below slots already held"}},
)
async def update_tournament(
    tournament_id: str,
    request_body: TournamentUpdateRequest,
    reservations: Reservations,
):
    """Set capacity or hall. The tournament is created if it does not exist."""
    snapshot = await reservations.configure(
        tournament_id,
        max_slots=request_body.max_slots,
        hall_id=request_body.hall_id,
    )
    return snapshot_response(snapshot)


@router.get("/tournaments/{tournament_id}/waitlist", response_model=WaitlistListResponse)
async def list_waitlist(
    tournament_id: str,
    db: DbSession,
    status: WaitlistStatus | None = None,
):
    """Waitlist rows in FIFO order, optionally filtered by status."""
    rows = await WaitlistQueue(db).list_rows(
        tournament_id,
        statuses=(status.value,) if status is not None else None,
    )
    return WaitlistListResponse(
        count=len(rows),
        rows=[WaitlistRowResponse.model_validate(row) for row in rows],
    )


@router.post(
    "/tournaments/{tournament_id}/entries/{user_id}/cancel",
    response_model=CancelEntryResponse,
    response_model_exclude_none=True,
    responses={
        404: {"model": ErrorResponse, "description": "User holds no slot"},
        502: {"model": ErrorResponse, "description": "Refund failed"},
    },
)
async def cancel_entry(tournament_id: str, user_id: str, reservations: Reservations):
    """Cancel an entry, refund it if it was paid, and promote from the waitlist."""
    result = await reservations.cancel_entry(tournament_id, user_id)
    return CancelEntryResponse(promotion=promotion_response(result))


# =============================================================================
# Halls & reporting
# =============================================================================


@router.put("/halls/{hall_id}/settings", response_model=HallSettingsResponse)
async def update_hall_settings(
    hall_id: str,
    request_body: HallSettingsRequest,
    db: DbSession,
):
    """Replace a hall's fee overrides; omitted values fall back to global fees."""
    setting = await HallSettingsService(db).upsert(
        hall_id,
        base_fee_cents=request_body.base_fee_cents,
        nonmember_fee_cents=request_body.nonmember_fee_cents,
        revenue_split_pct=request_body.revenue_split_pct,
    )
    await db.commit()
    return HallSettingsResponse.model_validate(setting)


@router.get(
    "/revenue.csv",
    response_class=Response,
    responses={200: {"content": {"text/csv": {}}}},
)
async def revenue_csv(
    db: DbSession,
    settings: AppSettings,
    clock: AppClock,
    start: datetime | None = Query(None, alias="from"),
    end: datetime | None = Query(None, alias="to"),
    hall_id: str | None = Query(None, alias="hallId"),
    detail: bool = False,
):
    """Paid-entry revenue per hall, or one line per paid entry with `detail=1`."""
    report = RevenueReport(db, settings, clock)
    start, end = report.window(start, end)
    if start > end:
        raise ValidationError("from must not be after to", {"from": start.isoformat(), "to": end.isoformat()})

    if detail:
        content = detail_csv(await report.detail(start, end, hall_id))
        filename = f"revenue-detail-{start:%Y%m%d}-{end:%Y%m%d}.csv"
    else:
        content = summary_csv(await report.summary_by_hall(start, end, hall_id))
        filename = f"revenue-{start:%Y%m%d}-{end:%Y%m%d}.csv"

    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )

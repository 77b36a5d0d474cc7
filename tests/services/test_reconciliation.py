"""Webhook reconciliation tests.

Deliveries go through ReconciliationEngine.handle with a real v1 signature,
so verification, parsing and application are all exercised.
"""

import asyncio
import time
from unittest.mock import patch

import pytest

from entry_engine.models import EntryStatus, ProcessedGatewayEvent, WaitlistStatus
from entry_engine.services.capacity import CapacityLedger
from entry_engine.services.entries import EntryStore
from entry_engine.services.membership import MembershipService
from entry_engine.services.reconciliation import ReconciliationEngine, ReconciliationOutcome
from entry_engine.services.waitlist import WaitlistQueue
from entry_engine.utils.errors import (
    GatewayAuthenticityError,
    GatewayNotConfiguredError,
    ValidationError,
)

from tests.conftest import (
    charge_refunded_event,
    checkout_completed_event,
    checkout_expired_event,
    make_event,
    set_membership,
    sign_payload,
    subscription_event,
)

TID = "sunday-cup"


async def deliver(engine: ReconciliationEngine, payload: bytes):
    return await engine.handle(payload, sign_payload(payload))


async def ledger_row(db, event_id: str) -> ProcessedGatewayEvent | None:
    return await db.get(ProcessedGatewayEvent, event_id, populate_existing=True)


async def reserve(reservations, user_id: str = "u1", max_slots: int = 1):
    await reservations.configure(TID, max_slots=max_slots)
    result = await reservations.attempt_reserve(TID, user_id)
    return result.entry


# =============================================================================
# Signature verification
# =============================================================================


@pytest.mark.asyncio
async def test_bad_signature_is_rejected(reconciliation, db):
    payload = make_event("checkout.session.completed", {"id": "cs_1"}, event_id="evt_sig")

    with pytest.raises(GatewayAuthenticityError):
        await reconciliation.handle(payload, sign_payload(payload, secret="whsec_wrong"))
    with pytest.raises(GatewayAuthenticityError):
        await reconciliation.handle(payload, None)

    assert await ledger_row(db, "evt_sig") is None


@pytest.mark.asyncio
async def test_old_signature_is_rejected(reconciliation):
    payload = make_event("checkout.session.completed", {"id": "cs_1"})

    with pytest.raises(GatewayAuthenticityError):
        await reconciliation.handle(payload, sign_payload(payload, timestamp=int(time.time()) - 3600))


@pytest.mark.asyncio
async def test_missing_webhook_secret(db, settings, gateway, lock_manager, clock):
    unconfigured = settings.model_copy(update={"stripe_webhook_secret": None})
    engine = ReconciliationEngine(db, unconfigured, gateway, lock_manager, clock)
    payload = make_event("checkout.session.completed", {"id": "cs_1"})

    with pytest.raises(GatewayNotConfiguredError):
        await deliver(engine, payload)


@pytest.mark.asyncio
async def test_malformed_body_is_a_validation_error(reconciliation):
    payload = b'{"id": "evt_1", "type": "checkout.session.completed"}'

    with pytest.raises(ValidationError):
        await deliver(reconciliation, payload)


# =============================================================================
# Entry payments
# =============================================================================


@pytest.mark.asyncio
async def test_completed_checkout_marks_entry_paid(reservations, reconciliation, db, settings):
    entry = await reserve(reservations)
    payload = checkout_completed_event(entry, payment_intent="pi_1", event_id="evt_paid")

    result = await deliver(reconciliation, payload)

    assert result.outcome == ReconciliationOutcome.APPLIED
    assert result.kind == "entry_checkout_completed"
    paid = await EntryStore(db).get(TID, "u1")
    assert paid.status == EntryStatus.PAID.value
    assert paid.payment_reference == "pi_1"
    assert paid.hold_expires_at is None
    row = await ledger_row(db, "evt_paid")
    assert row.outcome == "applied"
    tournament = await CapacityLedger(db, settings).get(TID)
    assert tournament.held_count == 1


@pytest.mark.asyncio
async def test_duplicate_delivery_is_applied_once(reservations, reconciliation, db, settings):
    entry = await reserve(reservations)
    payload = checkout_completed_event(entry, event_id="evt_dup")

    first = await deliver(reconciliation, payload)
    second = await deliver(reconciliation, payload)

    assert first.outcome == ReconciliationOutcome.APPLIED
    assert second.outcome == ReconciliationOutcome.DUPLICATE
    tournament = await CapacityLedger(db, settings).get(TID)
    assert tournament.held_count == 1


@pytest.mark.asyncio
async def test_simultaneous_deliveries_are_applied_once(
    reservations, settings, session_factory, gateway, lock_manager, clock, db
):
    entry = await reserve(reservations)
    payload = checkout_completed_event(entry, event_id="evt_race")

    async def deliver_on_own_session():
        async with session_factory() as session:
            engine = ReconciliationEngine(session, settings, gateway, lock_manager, clock)
            result = await deliver(engine, payload)
            return result.outcome

    outcomes = await asyncio.gather(deliver_on_own_session(), deliver_on_own_session())

    assert sorted(outcomes) == sorted([ReconciliationOutcome.APPLIED, ReconciliationOutcome.DUPLICATE])
    paid = await EntryStore(db).get(TID, "u1")
    assert paid.status == EntryStatus.PAID.value
    assert (await ledger_row(db, "evt_race")) is not None
    tournament = await CapacityLedger(db, settings).get(TID)
    assert tournament.held_count == 1


@pytest.mark.asyncio
async def test_same_payment_under_new_event_id(reservations, reconciliation):
    entry = await reserve(reservations)

    await deliver(reconciliation, checkout_completed_event(entry, event_id="evt_a"))
    replay = await deliver(reconciliation, checkout_completed_event(entry, event_id="evt_b"))

    assert replay.outcome == ReconciliationOutcome.ALREADY_APPLIED


@pytest.mark.asyncio
async def test_payment_for_reclaimed_hold_is_a_conflict(reservations, reconciliation, clock, db):
    entry = await reserve(reservations)
    payload = checkout_completed_event(entry, event_id="evt_late")
    clock.advance(minutes=66)
    await reservations.attempt_reserve(TID, "u2")

    result = await deliver(reconciliation, payload)

    assert result.outcome == ReconciliationOutcome.CONFLICT
    assert result.reason == "entry_not_pending"
    assert (await ledger_row(db, "evt_late")).outcome == "conflict"
    assert (await EntryStore(db).get(TID, "u1")).status == EntryStatus.FAILED.value


@pytest.mark.asyncio
async def test_payment_for_unknown_entry_is_a_conflict(reconciliation, db):
    payload = make_event(
        "checkout.session.completed",
        {
            "id": "cs_unknown",
            "mode": "payment",
            "payment_status": "paid",
            "payment_intent": "pi_x",
            "metadata": {"type": "tournament_entry", "tournamentId": TID, "userId": "ghost"},
        },
        event_id="evt_ghost",
    )

    result = await deliver(reconciliation, payload)

    assert result.outcome == ReconciliationOutcome.CONFLICT
    assert result.reason == "entry_missing"
    assert await ledger_row(db, "evt_ghost") is not None


@pytest.mark.asyncio
async def test_amount_mismatch_is_a_conflict(reservations, reconciliation, db):
    entry = await reserve(reservations)
    payload = make_event(
        "checkout.session.completed",
        {
            "id": entry.checkout_session_id,
            "mode": "payment",
            "payment_status": "paid",
            "payment_intent": "pi_1",
            "metadata": {
                "type": "tournament_entry",
                "tournamentId": TID,
                "userId": "u1",
                "entryId": entry.id,
                "amountCents": "1",
                "attempt": "1",
            },
        },
    )

    result = await deliver(reconciliation, payload)

    assert result.reason == "amount_mismatch"
    assert (await EntryStore(db).get(TID, "u1")).status == EntryStatus.PENDING.value


@pytest.mark.asyncio
async def test_unpaid_or_foreign_checkouts_are_ignored(reconciliation, db):
    unsettled = make_event(
        "checkout.session.completed",
        {"id": "cs_1", "mode": "payment", "payment_status": "unpaid", "metadata": {"type": "tournament_entry"}},
        event_id="evt_unpaid",
    )
    foreign = make_event("payment_intent.created", {"id": "pi_1"}, event_id="evt_foreign")

    assert (await deliver(reconciliation, unsettled)).outcome == ReconciliationOutcome.IGNORED
    assert (await deliver(reconciliation, foreign)).outcome == ReconciliationOutcome.IGNORED
    assert (await ledger_row(db, "evt_foreign")).outcome == "ignored"


@pytest.mark.asyncio
async def test_paid_offer_converts_waitlist_row(reservations, reconciliation, db, settings):
    await reserve(reservations)
    await reservations.join_waitlist(TID, "a")
    await reservations.cancel_entry(TID, "u1")
    offer_entry = await EntryStore(db).get(TID, "a")

    result = await deliver(reconciliation, checkout_completed_event(offer_entry))

    assert result.outcome == ReconciliationOutcome.APPLIED
    row = await WaitlistQueue(db).get(offer_entry.waitlist_row_id)
    assert row.status == WaitlistStatus.CONVERTED.value
    tournament = await CapacityLedger(db, settings).get(TID)
    assert tournament.held_count == 1
    assert tournament.is_open is False


@pytest.mark.asyncio
async def test_failed_apply_leaves_no_trace_and_is_retried(reservations, reconciliation, db):
    entry = await reserve(reservations)
    payload = checkout_completed_event(entry, event_id="evt_retry")

    with patch.object(EntryStore, "mark_paid", side_effect=RuntimeError("database went away")):
        with pytest.raises(RuntimeError):
            await deliver(reconciliation, payload)

    assert await ledger_row(db, "evt_retry") is None
    assert (await EntryStore(db).get(TID, "u1")).status == EntryStatus.PENDING.value

    result = await deliver(reconciliation, payload)
    assert result.outcome == ReconciliationOutcome.APPLIED


# =============================================================================
# Expiry and refunds
# =============================================================================


@pytest.mark.asyncio
async def test_expired_checkout_frees_slot_and_promotes(reservations, reconciliation, db, settings):
    entry = await reserve(reservations)
    await reservations.join_waitlist(TID, "a")

    result = await deliver(reconciliation, checkout_expired_event(entry))

    assert result.outcome == ReconciliationOutcome.APPLIED
    expired = await EntryStore(db).get(TID, "u1")
    assert expired.status == EntryStatus.FAILED.value
    assert expired.failure_reason == "checkout_expired"
    offered = await WaitlistQueue(db).get_active(TID, "a")
    assert offered.status == WaitlistStatus.OFFERED.value
    tournament = await CapacityLedger(db, settings).get(TID)
    assert tournament.held_count == 1


@pytest.mark.asyncio
async def test_expiry_after_payment_changes_nothing(reservations, reconciliation, db):
    entry = await reserve(reservations)
    await deliver(reconciliation, checkout_completed_event(entry))

    result = await deliver(reconciliation, checkout_expired_event(entry))

    assert result.outcome == ReconciliationOutcome.ALREADY_APPLIED
    assert (await EntryStore(db).get(TID, "u1")).status == EntryStatus.PAID.value


@pytest.mark.asyncio
async def test_refund_releases_slot_and_promotes(reservations, reconciliation, db, settings):
    entry = await reserve(reservations)
    await deliver(reconciliation, checkout_completed_event(entry, payment_intent="pi_r"))
    await reservations.join_waitlist(TID, "a")

    result = await deliver(reconciliation, charge_refunded_event("pi_r"))
    again = await deliver(reconciliation, charge_refunded_event("pi_r"))

    assert result.outcome == ReconciliationOutcome.APPLIED
    assert again.outcome == ReconciliationOutcome.ALREADY_APPLIED
    assert (await EntryStore(db).get(TID, "u1")).status == EntryStatus.REFUNDED.value
    offered = await WaitlistQueue(db).get_active(TID, "a")
    assert offered.status == WaitlistStatus.OFFERED.value
    tournament = await CapacityLedger(db, settings).get(TID)
    assert tournament.held_count == 1


@pytest.mark.asyncio
async def test_refund_for_unknown_payment_is_a_conflict(reconciliation):
    result = await deliver(reconciliation, charge_refunded_event("pi_nobody"))

    assert result.outcome == ReconciliationOutcome.CONFLICT
    assert result.reason == "entry_missing"


# =============================================================================
# Membership
# =============================================================================


@pytest.mark.asyncio
async def test_subscription_checkout_sets_membership(reconciliation, db):
    payload = make_event(
        "checkout.session.completed",
        {
            "id": "cs_sub_1",
            "mode": "subscription",
            "customer": "cus_9",
            "subscription": "sub_9",
            "client_reference_id": "m1",
            "metadata": {"userId": "m1", "tier": "large"},
            "customer_details": {"email": "m1@example.com"},
        },
    )

    result = await deliver(reconciliation, payload)

    assert result.outcome == ReconciliationOutcome.APPLIED
    view = await MembershipService(db).get_status("m1")
    assert view.role == "large"
    assert view.status == "active"
    assert view.customer_ref == "cus_9"
    assert view.subscription_ref == "sub_9"
    assert view.email == "m1@example.com"


@pytest.mark.asyncio
async def test_out_of_order_subscription_events(reconciliation, db):
    now = int(time.time())
    newer = subscription_event("customer.subscription.updated", "m1", tier="large", created=now)
    older = subscription_event("customer.subscription.updated", "m1", tier="small", created=now - 100)

    assert (await deliver(reconciliation, newer)).outcome == ReconciliationOutcome.APPLIED
    assert (await deliver(reconciliation, older)).outcome == ReconciliationOutcome.STALE

    view = await MembershipService(db).get_status("m1")
    assert view.role == "large"
    assert view.period_end is not None


@pytest.mark.asyncio
async def test_update_without_tier_keeps_role(reconciliation, db):
    await set_membership(db, "m1", "medium")

    await deliver(reconciliation, subscription_event("customer.subscription.updated", "m1", tier=None, status="trialing"))

    view = await MembershipService(db).get_status("m1")
    assert view.role == "medium"
    assert view.status == "trialing"


@pytest.mark.asyncio
async def test_subscription_deleted_drops_to_small(reconciliation, db):
    await set_membership(db, "m1", "mega")

    result = await deliver(reconciliation, subscription_event("customer.subscription.deleted", "m1"))

    assert result.outcome == ReconciliationOutcome.APPLIED
    view = await MembershipService(db).get_status("m1")
    assert view.role == "small"
    assert view.status == "canceled"


@pytest.mark.asyncio
async def test_failed_invoice_resolves_member_by_customer(reconciliation, db):
    await set_membership(db, "m1", "large", customer_ref="cus_42")
    payload = make_event(
        "invoice.payment_failed",
        {"id": "in_1", "object": "invoice", "customer": "cus_42", "subscription": "sub_42"},
    )

    result = await deliver(reconciliation, payload)

    assert result.outcome == ReconciliationOutcome.APPLIED
    view = await MembershipService(db).get_status("m1")
    assert view.role == "large"
    assert view.status == "past_due"


@pytest.mark.asyncio
async def test_failed_invoice_for_unknown_customer_is_a_conflict(reconciliation):
    payload = make_event("invoice.payment_failed", {"id": "in_2", "customer": "cus_unknown"})

    result = await deliver(reconciliation, payload)

    assert result.outcome == ReconciliationOutcome.CONFLICT
    assert result.reason == "membership_missing"

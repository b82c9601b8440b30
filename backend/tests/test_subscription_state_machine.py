"""
Subscription lifecycle tests driven through the webhook processor.

Covers: payment idempotence per invoice, lazy materialization, plan changes,
cancellation fallback to free, stale events and reactivation.
"""
from __future__ import annotations

from datetime import timedelta

import pytest

from billsync.core.plans import PlanTier
from billsync.models.subscription_history import HistoryChangeType
from billsync.models.webhook_event import WebhookEvent
from billsync.services.subscription_query_service import SubscriptionQueryService
from tests.conftest import (
    add_subscription,
    add_user,
    checkout_event,
    history_for,
    invoice_event,
    payments_for,
    signed_request,
    subscription_event,
    subscriptions_for,
)


async def _deliver(db, processor, payload) -> int:
    outcome = await processor.receive(db, signed_request(payload))
    assert outcome.status_code == 200, outcome.body
    return outcome.status_code


def _active(subs):
    return [s for s in subs if s.status == "active"]


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_payment_succeeded_is_idempotent_per_invoice(db, processor, user) -> None:
    uid = user.id
    await _deliver(db, processor, checkout_event("evt_1", uid))

    await _deliver(db, processor, invoice_event("evt_2", invoice="in_1"))
    await _deliver(db, processor, invoice_event("evt_3", invoice="in_1"))

    payments = await payments_for(db, uid)
    assert len(payments) == 1
    assert payments[0].status == "paid"
    assert payments[0].amount_cents == 2900
    assert payments[0].paid_at is not None


@pytest.mark.asyncio
async def test_paid_invoice_is_never_downgraded(db, processor, user) -> None:
    uid = user.id
    await _deliver(db, processor, checkout_event("evt_1", uid))
    await _deliver(db, processor, invoice_event("evt_2", invoice="in_1"))

    await _deliver(db, processor, invoice_event("evt_3", "invoice.payment_failed", invoice="in_1"))

    payments = await payments_for(db, uid)
    assert [p.status for p in payments] == ["paid"]
    sub = (await subscriptions_for(db, uid))[0]
    assert sub.status == "past_due"
    assert "payment_failed" in [h.change_type for h in await history_for(db, uid)]


@pytest.mark.asyncio
async def test_failed_then_paid_invoice_recovers_subscription(db, processor, user, clock, notifier) -> None:
    uid = user.id
    await _deliver(db, processor, checkout_event("evt_1", uid))
    await _deliver(db, processor, invoice_event("evt_2", "invoice.payment_failed", invoice="in_2"))
    assert (await payments_for(db, uid))[0].status == "failed"

    clock.advance(days=1)
    await _deliver(db, processor, invoice_event("evt_3", invoice="in_2"))

    payment = (await payments_for(db, uid))[0]
    assert payment.status == "paid"
    assert payment.failure_reason is None
    sub = (await subscriptions_for(db, uid))[0]
    assert sub.status == "active"
    assert sub.current_period_end == clock() + timedelta(days=30)
    assert notifier.kinds() == ["subscription_activated", "payment_failed", "payment_succeeded"]


@pytest.mark.asyncio
async def test_invoice_without_subscription_is_a_noop(db, processor, user) -> None:
    payload = invoice_event("evt_1", subscription=None)

    outcome = await processor.receive(db, signed_request(payload))

    assert outcome.status_code == 200
    assert (await db.get(WebhookEvent, outcome.log_id)).status == "completed"
    assert await payments_for(db, user.id) == []


# ---------------------------------------------------------------------------
# Lazy materialization
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_invoice_before_checkout_materializes_subscription(db, processor) -> None:
    """Payment arriving first creates the row; the late checkout reuses it."""
    user = await add_user(db, "early@example.com", customer_id="cus_early")
    uid = user.id

    await _deliver(db, processor, invoice_event(
        "evt_1", subscription="sub_early", customer="cus_early", price="price_pro_yearly",
    ))
    subs = await subscriptions_for(db, uid)
    assert [(s.plan, s.status, s.provider_subscription_id) for s in subs] == [
        ("pro_yearly", "active", "sub_early"),
    ]

    await _deliver(db, processor, checkout_event(
        "evt_2", uid, plan="pro_yearly", customer="cus_early", subscription="sub_early",
    ))

    assert len(await subscriptions_for(db, uid)) == 1
    assert [h.change_type for h in await history_for(db, uid)] == ["created"]
    assert len(await payments_for(db, uid)) == 1


@pytest.mark.asyncio
async def test_invoice_without_mapped_price_asks_provider(db, processor, provider, clock) -> None:
    user = await add_user(db, "remote@example.com", customer_id="cus_remote")
    provider.subscriptions["sub_remote"] = {
        "id": "sub_remote",
        "items": {"data": [{"price": {"id": "price_max_yearly"}}]},
    }

    await _deliver(db, processor, invoice_event(
        "evt_1", subscription="sub_remote", customer="cus_remote", price=None,
    ))

    sub = (await subscriptions_for(db, user.id))[0]
    assert sub.plan == "max_yearly"
    assert sub.current_period_end == clock() + timedelta(days=365)
    assert ("subscription", "sub_remote") in provider.calls


@pytest.mark.asyncio
async def test_subscription_event_for_unknown_price_is_permanent(db, processor) -> None:
    await add_user(db, "odd@example.com", customer_id="cus_odd")

    outcome = await processor.receive(db, signed_request(subscription_event(
        "evt_1", "customer.subscription.created",
        subscription="sub_odd", customer="cus_odd", price="price_legacy",
    )))

    assert outcome.status_code == 500
    log = await db.get(WebhookEvent, outcome.log_id)
    assert log.status == "failed"
    assert log.next_retry_at is None


# ---------------------------------------------------------------------------
# Plan changes
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_upgrade_then_billing_change_recomputes_period(db, processor, user, clock) -> None:
    uid = user.id
    await _deliver(db, processor, checkout_event("evt_1", uid))

    clock.advance(days=2)
    await _deliver(db, processor, subscription_event("evt_2", price="price_max_monthly"))
    sub = (await subscriptions_for(db, uid))[0]
    assert sub.plan == "max_monthly"
    assert sub.current_period_start == clock()
    assert sub.current_period_end == clock() + timedelta(days=30)

    clock.advance(minutes=5)
    await _deliver(db, processor, subscription_event("evt_3", price="price_max_yearly"))
    sub = (await subscriptions_for(db, uid))[0]
    assert sub.plan == "max_yearly"
    assert sub.current_period_end == clock() + timedelta(days=365)

    changes = [(h.change_type, h.previous_plan, h.new_plan) for h in await history_for(db, uid)]
    assert ("upgraded", "pro_monthly", "max_monthly") in changes
    assert ("billing_changed", "max_monthly", "max_yearly") in changes


@pytest.mark.asyncio
async def test_downgrade_is_recorded(db, processor, user) -> None:
    uid = user.id
    await _deliver(db, processor, checkout_event("evt_1", uid, plan="max_monthly"))

    await _deliver(db, processor, subscription_event("evt_2", price="price_pro_monthly"))

    assert (await subscriptions_for(db, uid))[0].plan == "pro_monthly"
    changes = [(h.change_type, h.previous_plan, h.new_plan) for h in await history_for(db, uid)]
    assert ("downgraded", "max_monthly", "pro_monthly") in changes


@pytest.mark.asyncio
async def test_checkout_on_free_user_upgrades_existing_row(db, processor, user) -> None:
    uid = user.id
    await add_subscription(db, uid, plan="free")

    await _deliver(db, processor, checkout_event("evt_1", uid, plan="max_yearly"))

    subs = await subscriptions_for(db, uid)
    assert len(subs) == 1
    assert subs[0].plan == "max_yearly"
    assert subs[0].provider_subscription_id == "sub_test"
    changes = [(h.change_type, h.previous_plan, h.new_plan) for h in await history_for(db, uid)]
    assert changes == [("upgraded", "free", "max_yearly")]


@pytest.mark.asyncio
async def test_status_and_cancel_flag_updates(db, processor, user) -> None:
    uid = user.id
    await _deliver(db, processor, checkout_event("evt_1", uid))

    await _deliver(db, processor, subscription_event("evt_2", cancel_at_period_end=True))
    assert (await subscriptions_for(db, uid))[0].cancel_at_period_end is True

    await _deliver(db, processor, subscription_event("evt_3", status="past_due", cancel_at_period_end=True))
    sub = (await subscriptions_for(db, uid))[0]
    assert sub.status == "past_due"

    access = await SubscriptionQueryService().get_access(db, uid)
    assert access.tier == PlanTier.FREE
    assert access.has_paid_access is False
    assert access.plan.value == "pro_monthly"


# ---------------------------------------------------------------------------
# Cancellation and reactivation
# ---------------------------------------------------------------------------

async def _checkout_and_delete(db, processor, uid) -> None:
    await _deliver(db, processor, checkout_event("evt_1", uid))
    await _deliver(db, processor, subscription_event(
        "evt_2", "customer.subscription.deleted", status="canceled",
    ))


@pytest.mark.asyncio
async def test_deleted_subscription_falls_back_to_free(db, processor, user, notifier) -> None:
    uid = user.id

    await _checkout_and_delete(db, processor, uid)

    subs = await subscriptions_for(db, uid)
    paid = next(s for s in subs if s.provider_subscription_id == "sub_test")
    assert paid.status == "canceled"
    assert paid.canceled_at is not None
    assert [(s.plan, s.status) for s in _active(subs)] == [("free", "active")]
    assert "canceled" in [h.change_type for h in await history_for(db, uid)]
    assert notifier.kinds()[-1] == "subscription_canceled"


@pytest.mark.asyncio
async def test_stale_update_after_cancel_is_ignored(db, processor, user) -> None:
    uid = user.id
    await _checkout_and_delete(db, processor, uid)

    outcome = await processor.receive(db, signed_request(subscription_event("evt_3", status="active")))

    assert outcome.status_code == 200
    subs = await subscriptions_for(db, uid)
    paid = next(s for s in subs if s.provider_subscription_id == "sub_test")
    assert paid.status == "canceled"
    assert [s.plan for s in _active(subs)] == ["free"]


@pytest.mark.asyncio
async def test_created_event_reactivates_and_retires_free_row(db, processor, user) -> None:
    uid = user.id
    await _checkout_and_delete(db, processor, uid)

    await _deliver(db, processor, subscription_event(
        "evt_3", "customer.subscription.created", status="active",
    ))

    subs = await subscriptions_for(db, uid)
    active = _active(subs)
    assert len(active) == 1
    assert active[0].provider_subscription_id == "sub_test"
    assert active[0].plan == "pro_monthly"
    assert active[0].canceled_at is None
    free = next(s for s in subs if s.plan == "free")
    assert free.status == "canceled"
    assert HistoryChangeType.REACTIVATED.value in [h.change_type for h in await history_for(db, uid)]


@pytest.mark.asyncio
async def test_new_checkout_after_cancel_takes_over_free_row(db, processor, user) -> None:
    uid = user.id
    await _checkout_and_delete(db, processor, uid)

    await _deliver(db, processor, checkout_event("evt_3", uid, subscription="sub_new"))

    active = _active(await subscriptions_for(db, uid))
    assert len(active) == 1
    assert active[0].provider_subscription_id == "sub_new"
    assert active[0].plan == "pro_monthly"


# ---------------------------------------------------------------------------
# Idempotency guard
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_history_is_deduplicated_within_window(db, guard, user, clock) -> None:
    sub = await add_subscription(db, user.id)

    async def record(change_type: HistoryChangeType):
        return await guard.record_history(
            db, sub, change_type, previous_plan="pro_monthly", new_plan="pro_monthly",
        )

    first = await record(HistoryChangeType.PAYMENT_FAILED)
    second = await record(HistoryChangeType.PAYMENT_FAILED)
    other_type = await record(HistoryChangeType.CANCELED)
    clock.advance(seconds=61)
    later = await record(HistoryChangeType.PAYMENT_FAILED)

    assert first is not None
    assert second is None
    assert other_type is not None
    assert later is not None


@pytest.mark.asyncio
async def test_history_for_same_provider_event_is_written_once(db, guard, user, clock) -> None:
    sub = await add_subscription(db, user.id)

    async def record(event_id: str):
        return await guard.record_history(
            db, sub, HistoryChangeType.PAYMENT_FAILED,
            previous_plan="pro_monthly", new_plan="pro_monthly",
            provider_event_id=event_id,
        )

    first = await record("evt_1")
    clock.advance(minutes=5)
    replay = await record("evt_1")
    next_event = await record("evt_2")

    assert first is not None
    assert replay is None
    assert next_event is not None


@pytest.mark.asyncio
async def test_past_due_recovery_retires_leftover_free_row(db, processor, user) -> None:
    """A paid invoice on a past_due row leaves a single active subscription."""
    uid = user.id
    await _deliver(db, processor, checkout_event("evt_1", uid))
    await _deliver(db, processor, invoice_event("evt_2", "invoice.payment_failed", invoice="in_2"))
    await add_subscription(db, uid, plan="free")

    await _deliver(db, processor, invoice_event("evt_3", invoice="in_2"))

    subs = await subscriptions_for(db, uid)
    assert [(s.plan, s.provider_subscription_id) for s in _active(subs)] == [("pro_monthly", "sub_test")]
    assert next(s for s in subs if s.plan == "free").status == "canceled"


@pytest.mark.asyncio
async def test_access_without_subscription_is_free(db, user) -> None:
    access = await SubscriptionQueryService().get_access(db, user.id)

    assert access.plan.value == "free"
    assert access.status is None
    assert access.subscription_id is None
    assert access.features["match_analyses_per_week"] == 10

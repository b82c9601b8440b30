"""
Reconciliation sweep tests.

Covers: failed-payment cancel, expire-to-free, orphan recovery, expiry warning
dedupe, lock/single-flight skips, filter re-check under lock, digests.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import timedelta

import pytest
from sqlalchemy import update

from billsync.models.subscription import Subscription
from billsync.services.leases import AdvisoryLock, SingleFlight, subscription_lock_key
from billsync.services.reconciliation_service import ReconciliationService
from tests.conftest import (
    add_subscription,
    add_user,
    checkout_event,
    history_for,
    invoice_event,
    signed_request,
    subscriptions_for,
)


class RacingLock(AdvisoryLock):
    """Runs ``on_acquire`` right after the lock is taken (concurrent writer)."""

    def __init__(self, redis, on_acquire) -> None:
        super().__init__(redis, wait_seconds=0)
        self._on_acquire = on_acquire

    @asynccontextmanager
    async def hold(self, key):
        async with super().hold(key) as lease:
            await self._on_acquire()
            yield lease


# ---------------------------------------------------------------------------
# Failed payment cancel
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_past_due_beyond_grace_is_canceled_to_free(db, reconciliation, user, clock, notifier) -> None:
    """past_due untouched for 8 days: canceled, new free row, canceled history."""
    uid = user.id
    stale = await add_subscription(
        db, uid, status="past_due", updated_at=clock() - timedelta(days=8),
    )

    report = await reconciliation.cancel_failed_payments(db)

    assert (report.checked, report.changed, report.errors) == (1, 1, 0)
    subs = await subscriptions_for(db, uid)
    canceled = next(s for s in subs if s.id == stale.id)
    assert canceled.status == "canceled"
    assert canceled.canceled_at == clock()
    assert canceled.cancel_at_period_end is False
    free = next(s for s in subs if s.id != stale.id)
    assert (free.plan, free.status) == ("free", "active")

    history = await history_for(db, uid)
    assert [(h.change_type, h.subscription_id) for h in history] == [("canceled", free.id)]
    assert notifier.sent[0].data["reason"] == "payment_failed"


@pytest.mark.asyncio
async def test_past_due_within_grace_is_kept(db, reconciliation, user, clock) -> None:
    await add_subscription(db, user.id, status="past_due", updated_at=clock() - timedelta(days=6))

    report = await reconciliation.cancel_failed_payments(db)

    assert report.checked == 0
    assert [s.status for s in await subscriptions_for(db, user.id)] == ["past_due"]


# ---------------------------------------------------------------------------
# Expire to free
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_expire_to_free_respects_cancel_flag(db, reconciliation, clock) -> None:
    ended = clock() - timedelta(hours=1)
    canceling = await add_user(db, "canceling@example.com")
    renewing = await add_user(db, "renewing@example.com")
    legacy = await add_user(db, "legacy@example.com")
    await add_subscription(db, canceling.id, period_end=ended, cancel_at_period_end=True)
    await add_subscription(db, renewing.id, period_end=ended, cancel_at_period_end=False)
    await add_subscription(db, legacy.id, period_end=ended, cancel_at_period_end=None)

    report = await reconciliation.expire_to_free(db)

    assert report.changed == 2
    for expired_user in (canceling, legacy):
        subs = await subscriptions_for(db, expired_user.id)
        assert sorted((s.plan, s.status) for s in subs) == [("free", "active"), ("pro_monthly", "expired")]
        assert [h.change_type for h in await history_for(db, expired_user.id)] == ["downgraded"]
    assert [s.status for s in await subscriptions_for(db, renewing.id)] == ["active"]


@pytest.mark.asyncio
async def test_expire_to_free_is_idempotent(db, reconciliation, user, clock) -> None:
    uid = user.id
    await add_subscription(db, uid, period_end=clock() - timedelta(days=1), cancel_at_period_end=True)

    first = await reconciliation.expire_to_free(db)
    second = await reconciliation.expire_to_free(db)

    assert first.changed == 1
    assert (second.checked, second.changed) == (0, 0)
    assert len(await subscriptions_for(db, uid)) == 2
    assert len(await history_for(db, uid)) == 1


@pytest.mark.asyncio
async def test_free_rows_never_expire(db, reconciliation, user, clock) -> None:
    await add_subscription(
        db, user.id, plan="free", period_end=clock() - timedelta(days=1), cancel_at_period_end=None,
    )

    report = await reconciliation.expire_to_free(db)

    assert report.checked == 0


# ---------------------------------------------------------------------------
# Orphan recovery
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_orphaned_user_gets_free_subscription(db, reconciliation, clock, notifier) -> None:
    orphan = await add_user(db, "orphan@example.com")
    covered = await add_user(db, "covered@example.com")
    await add_subscription(db, orphan.id, status="expired", period_end=clock() - timedelta(days=2))
    await add_subscription(db, covered.id, status="expired", period_end=clock() - timedelta(days=2))
    await add_subscription(db, covered.id, plan="free")

    report = await reconciliation.recover_orphans(db)

    assert (report.checked, report.changed) == (1, 1)
    free = [s for s in await subscriptions_for(db, orphan.id) if s.plan == "free"]
    assert len(free) == 1
    assert [(h.change_type, h.subscription_id) for h in await history_for(db, orphan.id)] == [
        ("system_recovery", free[0].id),
    ]
    assert notifier.kinds() == ["subscription_recovered"]
    assert len(await subscriptions_for(db, covered.id)) == 2


@pytest.mark.asyncio
async def test_orphan_with_several_expired_rows_gets_one_free(db, reconciliation, user, clock) -> None:
    uid = user.id
    await add_subscription(db, uid, status="expired", created_at=clock() - timedelta(days=90))
    await add_subscription(db, uid, plan="max_monthly", status="expired", created_at=clock() - timedelta(days=40))

    report = await reconciliation.recover_orphans(db)

    assert report.checked == 2
    assert report.changed == 1
    assert report.skipped == 1
    assert [s.plan for s in await subscriptions_for(db, uid) if s.status == "active"] == ["free"]


@pytest.mark.asyncio
async def test_user_with_past_due_row_is_not_an_orphan(db, reconciliation, processor, user, clock) -> None:
    """Old expired row plus a current past_due one: no free fallback, one active after recovery."""
    uid = user.id
    await add_subscription(db, uid, status="expired", created_at=clock() - timedelta(days=90))
    await processor.receive(db, signed_request(checkout_event("evt_1", uid)))
    await processor.receive(
        db, signed_request(invoice_event("evt_2", "invoice.payment_failed", invoice="in_2")),
    )

    report = await reconciliation.recover_orphans(db)

    assert (report.checked, report.changed) == (0, 0)
    assert sorted((s.plan, s.status) for s in await subscriptions_for(db, uid)) == [
        ("pro_monthly", "expired"),
        ("pro_monthly", "past_due"),
    ]

    await processor.receive(db, signed_request(invoice_event("evt_3", invoice="in_2")))

    active = [s for s in await subscriptions_for(db, uid) if s.status == "active"]
    assert [(s.plan, s.provider_subscription_id) for s in active] == [("pro_monthly", "sub_test")]


# ---------------------------------------------------------------------------
# Expiry warnings
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_expiry_warning_sent_once_per_period(db, reconciliation, user, clock, notifier) -> None:
    uid = user.id
    sub = await add_subscription(db, uid, period_end=clock() + timedelta(days=2))
    await add_subscription(db, (await add_user(db, "later@example.com")).id, period_end=clock() + timedelta(days=5))

    first = await reconciliation.send_expiry_warnings(db)
    second = await reconciliation.send_expiry_warnings(db)

    assert first.changed == 1
    assert second.checked == 0
    assert notifier.kinds() == ["expiry_warning"]
    assert notifier.sent[0].subscription_id == sub.id

    # novo periodo (renovacao) volta a ser elegivel
    await db.execute(
        update(Subscription)
        .where(Subscription.id == sub.id)
        .values(current_period_end=clock() + timedelta(days=1))
    )
    await db.commit()
    third = await reconciliation.send_expiry_warnings(db)

    assert third.changed == 1
    assert notifier.kinds() == ["expiry_warning", "expiry_warning"]


# ---------------------------------------------------------------------------
# Concurrency safety
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_locked_row_is_skipped(db, reconciliation, user, redis, clock) -> None:
    uid = user.id
    await add_subscription(db, uid, status="past_due", updated_at=clock() - timedelta(days=8))
    await redis.set(f"billsync:lock:{subscription_lock_key(uid)}", "webhook-handler", ex=30)

    report = await reconciliation.cancel_failed_payments(db)

    assert (report.checked, report.changed, report.skipped) == (1, 0, 1)
    assert [s.status for s in await subscriptions_for(db, uid)] == ["past_due"]


@pytest.mark.asyncio
async def test_row_changed_before_lock_is_not_touched(db, guard, redis, notifier, user, clock) -> None:
    """A payment lands between selection and lock: filter re-check skips the row."""
    uid = user.id
    sub = await add_subscription(db, uid, status="past_due", updated_at=clock() - timedelta(days=8))

    async def payment_arrives() -> None:
        await db.execute(
            update(Subscription)
            .where(Subscription.id == sub.id)
            .values(status="active", updated_at=clock())
        )
        await db.commit()

    service = ReconciliationService(
        guard=guard,
        locks=RacingLock(redis, payment_arrives),
        single_flight=SingleFlight(redis),
        notifier=notifier,
        clock=clock,
    )

    report = await service.cancel_failed_payments(db)

    assert (report.checked, report.changed, report.skipped) == (1, 0, 1)
    assert [s.status for s in await subscriptions_for(db, uid)] == ["active"]
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_sweep_is_single_flight(db, reconciliation, user, redis, clock) -> None:
    await add_subscription(db, user.id, status="past_due", updated_at=clock() - timedelta(days=8))
    await redis.set("billsync:sweep:failed_payment_cancel", "other-worker", ex=60)

    report = await reconciliation.cancel_failed_payments(db)

    assert report.skipped_run is True
    assert report.checked == 0


# ---------------------------------------------------------------------------
# Digests
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_weekly_digest_targets_paid_users_once(db, reconciliation, notifier) -> None:
    paid = await add_user(db, "paid@example.com")
    free = await add_user(db, "free@example.com")
    await add_subscription(db, paid.id, plan="max_yearly")
    await add_subscription(db, free.id, plan="free")

    report = await reconciliation.send_weekly_digest(db)

    assert report.changed == 1
    assert [(n.kind.value, n.user_id) for n in notifier.sent] == [("weekly_digest", paid.id)]


@pytest.mark.asyncio
async def test_free_plan_reminder_skips_paying_users(db, reconciliation, clock, notifier) -> None:
    free_only = await add_user(db, "free-only@example.com")
    upgraded = await add_user(db, "upgraded@example.com")
    await add_subscription(db, free_only.id, plan="free", created_at=clock() - timedelta(days=12))
    await add_subscription(db, upgraded.id, plan="free", status="canceled")
    await add_subscription(db, upgraded.id, plan="pro_yearly")

    report = await reconciliation.send_free_plan_reminders(db)

    assert report.changed == 1
    reminder = notifier.sent[0]
    assert reminder.user_id == free_only.id
    assert reminder.data == {"days_on_free": 12}

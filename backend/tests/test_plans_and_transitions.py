"""
Plan catalog and status transition table tests.
"""
from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from billsync.core.exceptions import InvalidStatusTransition, PermanentHandlerFailure
from billsync.core.plans import (
    Plan,
    PlanChange,
    PlanTier,
    classify_plan_change,
    compare_tiers,
    features_for,
    parse_plan,
    period_end_for,
)
from billsync.models.subscription import SubscriptionStatus as S
from billsync.services.subscription_state_machine import (
    can_transition,
    ensure_transition,
    map_provider_status,
)


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "previous, new, expected",
    [
        (None, Plan.PRO_MONTHLY, PlanChange.UPGRADED),
        (Plan.FREE, Plan.MAX_YEARLY, PlanChange.UPGRADED),
        (Plan.PRO_MONTHLY, Plan.MAX_MONTHLY, PlanChange.UPGRADED),
        (Plan.MAX_YEARLY, Plan.PRO_YEARLY, PlanChange.DOWNGRADED),
        (Plan.PRO_MONTHLY, Plan.FREE, PlanChange.DOWNGRADED),
        (Plan.PRO_MONTHLY, Plan.PRO_YEARLY, PlanChange.BILLING_CHANGED),
        (Plan.MAX_YEARLY, Plan.MAX_MONTHLY, PlanChange.BILLING_CHANGED),
        (Plan.PRO_MONTHLY, Plan.PRO_MONTHLY, PlanChange.NO_CHANGE),
    ],
)
def test_classify_plan_change(previous, new, expected) -> None:
    assert classify_plan_change(previous, new) == expected


def test_tier_order_is_total() -> None:
    assert compare_tiers(PlanTier.FREE, PlanTier.PRO) == -1
    assert compare_tiers(PlanTier.MAX, PlanTier.PRO) == 1
    assert compare_tiers(PlanTier.PRO, PlanTier.PRO) == 0


def test_period_end_follows_plan_interval() -> None:
    start = datetime(2026, 1, 1)

    assert period_end_for(Plan.PRO_MONTHLY, start) == start + timedelta(days=30)
    assert period_end_for(Plan.MAX_YEARLY, start) == start + timedelta(days=365)
    assert period_end_for(Plan.FREE, start) == start + timedelta(days=30)


def test_parse_plan_rejects_unknown_values() -> None:
    assert parse_plan("max_monthly") is Plan.MAX_MONTHLY
    assert parse_plan("enterprise") is None
    assert parse_plan(None) is None


def test_features_grow_with_tier() -> None:
    assert features_for(Plan.FREE)["match_analyses_per_week"] == 10
    assert features_for(Plan.PRO_YEARLY)["movement_heatmaps"] is True
    assert features_for(Plan.MAX_MONTHLY)["match_analyses_per_week"] == -1
    # copia: mutar o retorno nao altera o catalogo
    features_for(Plan.FREE)["movement_heatmaps"] = True
    assert features_for(Plan.FREE)["movement_heatmaps"] is False


# ---------------------------------------------------------------------------
# Status transitions
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "before, after",
    [
        (S.ACTIVE, S.PAST_DUE),
        (S.ACTIVE, S.CANCELED),
        (S.ACTIVE, S.EXPIRED),
        (S.PAST_DUE, S.ACTIVE),
        (S.PAST_DUE, S.CANCELED),
        (S.INCOMPLETE, S.ACTIVE),
        (S.INCOMPLETE, S.INCOMPLETE_EXPIRED),
        (S.CANCELED, S.CANCELED),
    ],
)
def test_allowed_transitions(before, after) -> None:
    assert can_transition(before, after)


@pytest.mark.parametrize(
    "before, after",
    [
        (S.CANCELED, S.ACTIVE),
        (S.EXPIRED, S.ACTIVE),
        (S.EXPIRED, S.PAST_DUE),
        (S.CANCELED, S.PAST_DUE),
        (S.INCOMPLETE_EXPIRED, S.ACTIVE),
    ],
)
def test_terminal_states_reject_plain_updates(before, after) -> None:
    assert not can_transition(before, after)
    with pytest.raises(InvalidStatusTransition):
        ensure_transition(before, after)


@pytest.mark.parametrize("before", [S.CANCELED, S.EXPIRED, S.INCOMPLETE_EXPIRED])
def test_new_subscription_event_reactivates_terminal_states(before) -> None:
    assert can_transition(before, S.ACTIVE, via_new_subscription=True)
    # so active e alcancavel por reativacao
    assert not can_transition(before, S.PAST_DUE, via_new_subscription=True)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("active", S.ACTIVE),
        ("trialing", S.ACTIVE),
        ("past_due", S.PAST_DUE),
        ("unpaid", S.PAST_DUE),
        ("canceled", S.CANCELED),
        ("incomplete_expired", S.INCOMPLETE_EXPIRED),
    ],
)
def test_map_provider_status(raw, expected) -> None:
    assert map_provider_status(raw) == expected


def test_unknown_provider_status_is_permanent() -> None:
    with pytest.raises(PermanentHandlerFailure) as exc_info:
        map_provider_status("exploded")
    assert exc_info.value.code == "unknown_provider_status"

"""Tests for period rollover and the sweep."""
from datetime import timedelta

from sqlalchemy import update

from atelier.core.config import settings
from atelier.core.database import get_db_session, subscriptions
from atelier.core.metrics import rollovers_total
from atelier.features.ledger.service import balance, try_deduct
from atelier.features.rollover.service import RolloverKind, compute_rollover, rollover, sweep_rollovers
from atelier.features.subscriptions.service import activate, cancel, get_subscription, provision_subscription
from atelier.models.plan import PlanType
from atelier.models.subscription import LifecycleState, SubscriptionStatus


def test_rollover_before_period_end_is_noop(t0):
    activate("u1", "monthly", now=t0)
    try_deduct("u1", 100, now=t0)

    sub = rollover("u1", now=t0 + timedelta(days=29, hours=23))
    assert sub.tokens_used == 100
    assert sub.current_period_start == t0


def test_active_rollover_resets_usage_and_advances_period(t0):
    activate("u1", "monthly", now=t0)
    try_deduct("u1", 4000, now=t0)

    sub = rollover("u1", now=t0 + timedelta(days=30))
    assert sub.tokens_used == 0
    assert sub.tokens_limit == 5000
    assert sub.current_period_start == t0 + timedelta(days=30)
    assert sub.current_period_end == t0 + timedelta(days=60)
    assert rollovers_total.value({"kind": "renewed"}) == 1


def test_rollover_is_idempotent(t0):
    activate("u1", "monthly", now=t0)
    at = t0 + timedelta(days=30, minutes=5)

    first = rollover("u1", now=at)
    second = rollover("u1", now=at)
    assert first == second
    assert rollovers_total.value({"kind": "renewed"}) == 1


def test_idle_user_is_caught_up_in_one_step(t0):
    activate("u1", "monthly", now=t0)

    sub = rollover("u1", now=t0 + timedelta(days=95))
    assert sub.current_period_start == t0 + timedelta(days=90)
    assert sub.current_period_end == t0 + timedelta(days=120)


def test_free_tier_renews_its_grant(t0):
    try_deduct("u1", 1000, now=t0)
    sub = rollover("u1", now=t0 + timedelta(days=30))
    assert sub.plan_type == PlanType.FREE
    assert sub.tokens_limit == 1000
    assert sub.tokens_used == 0


def test_rollover_reads_current_grant(t0, monkeypatch):
    activate("u1", "monthly", now=t0)
    monkeypatch.setattr(settings, "MONTHLY_TOKENS_PER_PERIOD", 8000)

    assert get_subscription("u1", now=t0).tokens_limit == 5000
    assert rollover("u1", now=t0 + timedelta(days=30)).tokens_limit == 8000


def test_lapsed_cancellation_demotes_to_free(t0):
    activate("u1", "annual", now=t0)
    try_deduct("u1", 100, now=t0)
    cancel("u1", now=t0 + timedelta(days=10))
    demoted_at = t0 + timedelta(days=366)

    sub = rollover("u1", now=demoted_at)
    assert sub.state == LifecycleState.FREE
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.tokens_limit == 1000
    assert sub.tokens_used == 0
    assert sub.cancelled_at is None
    assert sub.current_period_start == demoted_at
    assert sub.current_period_end == demoted_at + timedelta(days=30)
    assert rollovers_total.value({"kind": "demoted"}) == 1


def test_expired_status_demotes_once_elapsed(t0):
    provision_subscription("u1", now=t0)
    with get_db_session() as session:
        session.execute(
            update(subscriptions).where(subscriptions.c.user_id == "u1").values(status="expired")
        )

    sub = rollover("u1", now=t0 + timedelta(days=30))
    assert sub.state == LifecycleState.FREE
    assert try_deduct("u1", 1, now=t0 + timedelta(days=30)).committed


def test_compute_rollover_is_pure(t0):
    sub = provision_subscription("u1", now=t0)
    rolled, kind = compute_rollover(sub, t0 + timedelta(days=30))
    assert kind == RolloverKind.RENEWED
    assert rolled.current_period_start == t0 + timedelta(days=30)
    assert get_subscription("u1", now=t0).current_period_start == t0


def test_sweep_rolls_over_due_users_only(t0):
    activate("renewing", "monthly", now=t0)
    activate("lapsing", "monthly", now=t0)
    cancel("lapsing", now=t0 + timedelta(days=1))
    provision_subscription("fresh", now=t0 + timedelta(days=20))

    stats = sweep_rollovers(now=t0 + timedelta(days=31))
    assert stats["scanned"] == 2
    assert stats["renewed"] == 1
    assert stats["demoted"] == 1
    assert stats["failed"] == 0

    assert balance("lapsing", now=t0 + timedelta(days=31)).plan_type == PlanType.FREE
    assert balance("fresh", now=t0 + timedelta(days=31)).period_start == t0 + timedelta(days=20)

    again = sweep_rollovers(now=t0 + timedelta(days=31))
    assert again["scanned"] == 0


def test_sweep_respects_limit(t0):
    for user_id in ("a", "b", "c"):
        provision_subscription(user_id, now=t0)

    stats = sweep_rollovers(now=t0 + timedelta(days=30), limit=2)
    assert stats["scanned"] == 2
    assert stats["renewed"] == 2
    assert sweep_rollovers(now=t0 + timedelta(days=30))["scanned"] == 1

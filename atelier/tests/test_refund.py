"""Tests for refunds."""
from datetime import timedelta

import pytest

from atelier.core.errors import InvalidAmountError, NotFoundError
from atelier.core.metrics import refunds_total
from atelier.features.ledger.service import balance, refund, try_deduct
from atelier.features.subscriptions.service import activate
from atelier.features.usage.service import get_usage_history
from atelier.models.usage_event import UsageOutcome


def test_deduct_then_refund_restores_balance(t0):
    before = balance("u1", now=t0)
    op = try_deduct("u1", 25, now=t0)
    after = refund("u1", 25, operation_id=op.operation_id, now=t0)

    assert after.remaining == before.remaining
    assert after.used == before.used
    assert refunds_total.value() == 1


def test_refund_is_floored_at_zero(t0):
    try_deduct("u1", 5, now=t0)
    bal = refund("u1", 50, now=t0)
    assert bal.used == 0
    assert bal.remaining == 1000


def test_refund_zero_is_noop(t0):
    try_deduct("u1", 5, now=t0)
    bal = refund("u1", 0, now=t0)
    assert bal.used == 5
    assert all(e.outcome != UsageOutcome.REFUNDED for e in get_usage_history("u1"))


def test_negative_refund_raises(t0):
    with pytest.raises(InvalidAmountError):
        refund("u1", -1, now=t0)


def test_refund_writes_refunded_event_linked_to_operation(t0):
    op = try_deduct("u1", 8, now=t0)
    refund("u1", 8, operation_id=op.operation_id, now=t0 + timedelta(seconds=1))

    latest = get_usage_history("u1")[0]
    assert latest.outcome == UsageOutcome.REFUNDED
    assert latest.operation_id == op.operation_id
    assert latest.amount == 8


def test_refund_cannot_exceed_operation_amount(t0):
    op = try_deduct("u1", 10, now=t0)
    refund("u1", 6, operation_id=op.operation_id, now=t0)
    with pytest.raises(InvalidAmountError):
        refund("u1", 5, operation_id=op.operation_id, now=t0)
    assert balance("u1", now=t0).used == 4


def test_refund_of_foreign_operation_not_found(t0):
    op = try_deduct("owner", 10, now=t0)
    with pytest.raises(NotFoundError):
        refund("intruder", 10, operation_id=op.operation_id, now=t0)


def test_refund_of_rejected_attempt_not_found(t0):
    rejected = try_deduct("u1", 5000, now=t0)
    with pytest.raises(NotFoundError):
        refund("u1", 5000, operation_id=rejected.operation_id, now=t0)


def test_refund_after_rollover_leaves_new_period_untouched(t0):
    op = try_deduct("u1", 40, now=t0)
    later = t0 + timedelta(days=31)

    bal = refund("u1", 40, operation_id=op.operation_id, now=later)
    assert bal.used == 0
    assert bal.period_start == t0 + timedelta(days=30)
    assert get_usage_history("u1")[0].outcome == UsageOutcome.REFUNDED


def test_refund_after_interval_change_lowers_carried_usage(t0):
    activate("u1", "monthly", now=t0)
    op = try_deduct("u1", 100, now=t0 + timedelta(hours=1))
    activate("u1", "annual", now=t0 + timedelta(hours=2))
    assert balance("u1", now=t0 + timedelta(hours=2)).used == 100

    bal = refund("u1", 100, operation_id=op.operation_id, now=t0 + timedelta(hours=3))
    assert bal.used == 0
    assert bal.period_start == t0 + timedelta(hours=2)


def test_refund_of_deduction_before_fresh_activation_leaves_counter(t0):
    op = try_deduct("u1", 30, now=t0)
    activate("u1", "monthly", now=t0 + timedelta(hours=1))
    try_deduct("u1", 10, now=t0 + timedelta(hours=2))

    bal = refund("u1", 30, operation_id=op.operation_id, now=t0 + timedelta(hours=3))
    assert bal.used == 10

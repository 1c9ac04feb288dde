"""
atelier/features/ledger/service.py

Quota ledger: per-user token counters.

Handles:
- Atomic check-and-deduct (try_deduct)
- Refunds after a failed downstream operation
- Balance reads for the dashboard
- Reserve/act/refund helper (charge)

Every mutation runs inside ``user_lock(user_id)`` and one transaction, and
every spend attempt or refund appends exactly one usage event in that same
transaction. Rejections are results, not exceptions.
"""

from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

from atelier.core.clock import normalize_now
from atelier.core.database import get_db_session
from atelier.core.errors import InsufficientTokensError, InvalidAmountError, NotFoundError, PlanInactiveError
from atelier.core.locks import user_lock
from atelier.core.logging import log_event
from atelier.core.metrics import deductions_total, refunds_total, tokens_deducted_total
from atelier.features.rollover.service import apply_rollover
from atelier.features.subscriptions.store import load_or_provision, save_subscription
from atelier.features.usage.service import (
    find_committed_by_key,
    get_usage_event,
    record_usage_event,
    refunded_amount,
)
from atelier.models.ledger import Balance, DeductResult, DeductStatus, RejectionReason
from atelier.models.subscription import Subscription
from atelier.models.usage_event import UsageOutcome


def _require_non_negative(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmountError(f"Amount must be an integer, got {amount!r}")
    if amount < 0:
        raise InvalidAmountError(f"Amount must be non-negative, got {amount}")


def _to_balance(sub: Subscription) -> Balance:
    percent = (sub.tokens_used / sub.tokens_limit * 100) if sub.tokens_limit > 0 else 0.0
    return Balance(
        remaining=sub.remaining,
        used=sub.tokens_used,
        limit=sub.tokens_limit,
        percent_used=percent,
        period_start=sub.current_period_start,
        period_end=sub.current_period_end,
        plan_type=sub.plan_type,
        status=sub.status,
    )


def try_deduct(
    user_id: str,
    amount: int,
    *,
    reason: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    now: Optional[datetime] = None,
) -> DeductResult:
    """
    Atomically check and deduct ``amount`` tokens.

    Args:
        user_id: User to charge
        amount: Tokens to deduct (non-negative)
        reason: Free-form label stored on the usage event (e.g. "caption")
        idempotency_key: Replays the original committed result on retry
        now: Fixed timestamp for deterministic runs

    Returns:
        DeductResult (committed, or rejected with insufficient_tokens / plan_inactive)

    Raises:
        InvalidAmountError: amount is negative or not an integer
        LockTimeoutError: critical section not entered in time
        StoreUnavailableError: database failure (nothing committed)
    """
    _require_non_negative(amount)
    now = normalize_now(now)

    with user_lock(user_id), get_db_session() as session:
        sub = load_or_provision(session, user_id, now)

        if idempotency_key:
            previous = find_committed_by_key(session, user_id, idempotency_key)
            if previous is not None:
                log_event(
                    "info",
                    "ledger.deduct.replayed",
                    user_id=user_id,
                    extra={"operation_id": previous.id, "idempotency_key": idempotency_key},
                )
                return DeductResult(
                    status=DeductStatus.COMMITTED,
                    amount=previous.amount,
                    remaining=previous.balance_after if previous.balance_after is not None else sub.remaining,
                    required=previous.amount,
                    operation_id=previous.id,
                )

        sub = apply_rollover(session, sub, now)

        if amount == 0:
            return DeductResult(
                status=DeductStatus.COMMITTED,
                amount=0,
                remaining=sub.remaining,
                required=0,
            )

        rejection = None
        if not sub.spend_eligible:
            rejection = RejectionReason.PLAN_INACTIVE
        elif sub.tokens_used + amount > sub.tokens_limit:
            rejection = RejectionReason.INSUFFICIENT_TOKENS

        if rejection is not None:
            outcome = (
                UsageOutcome.REJECTED_INACTIVE
                if rejection == RejectionReason.PLAN_INACTIVE
                else UsageOutcome.REJECTED_INSUFFICIENT
            )
            event = record_usage_event(
                session, user_id, amount, outcome, now,
                reason=reason,
                balance_after=sub.remaining,
            )
            deductions_total.inc({"outcome": rejection.value})
            log_event(
                "info",
                "ledger.deduct.rejected",
                user_id=user_id,
                event_type=rejection.value,
                extra={"amount": amount, "remaining": sub.remaining, "plan_type": sub.plan_type.value},
            )
            return DeductResult(
                status=DeductStatus.REJECTED,
                reason=rejection,
                amount=amount,
                remaining=sub.remaining,
                required=amount,
                operation_id=event.id,
            )

        charged = sub.model_copy(update={"tokens_used": sub.tokens_used + amount})
        save_subscription(session, charged, now)
        event = record_usage_event(
            session, user_id, amount, UsageOutcome.COMMITTED, now,
            reason=reason,
            balance_after=charged.remaining,
            idempotency_key=idempotency_key,
        )

        deductions_total.inc({"outcome": DeductStatus.COMMITTED.value})
        tokens_deducted_total.inc(amount=amount)
        log_event(
            "info",
            "ledger.deduct.committed",
            user_id=user_id,
            extra={
                "amount": amount,
                "remaining": charged.remaining,
                "operation_id": event.id,
                "reason": reason,
            },
        )
        return DeductResult(
            status=DeductStatus.COMMITTED,
            amount=amount,
            remaining=charged.remaining,
            required=amount,
            operation_id=event.id,
        )


def refund(
    user_id: str,
    amount: int,
    *,
    operation_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Balance:
    """
    Return ``amount`` tokens after a failed downstream operation.

    ``tokens_used`` never drops below zero. With ``operation_id`` the refund
    is checked against that committed deduction; if the deduction belongs to
    a usage window that has since been reset by a rollover or a fresh
    activation, the refund is recorded but the counter is left alone.

    Raises:
        InvalidAmountError: negative amount, or more than the operation has left to refund
        NotFoundError: operation_id is not a committed deduction of this user
    """
    _require_non_negative(amount)
    now = normalize_now(now)

    with user_lock(user_id), get_db_session() as session:
        sub = apply_rollover(session, load_or_provision(session, user_id, now), now)
        if amount == 0:
            return _to_balance(sub)

        applies_to_counter = True
        if operation_id is not None:
            original = get_usage_event(session, operation_id)
            if original is None or original.user_id != user_id or original.outcome != UsageOutcome.COMMITTED:
                raise NotFoundError(f"Operation {operation_id} not found for user {user_id}")
            refundable = original.amount - refunded_amount(session, operation_id)
            if amount > refundable:
                raise InvalidAmountError(
                    f"Refund of {amount} exceeds the {refundable} tokens left on operation {operation_id}"
                )
            applies_to_counter = original.occurred_at >= sub.usage_since

        if applies_to_counter:
            sub = sub.model_copy(update={"tokens_used": max(0, sub.tokens_used - amount)})
            save_subscription(session, sub, now)

        record_usage_event(
            session, user_id, amount, UsageOutcome.REFUNDED, now,
            balance_after=sub.remaining,
            operation_id=operation_id,
        )

        refunds_total.inc()
        log_event(
            "info",
            "ledger.refund",
            user_id=user_id,
            extra={
                "amount": amount,
                "operation_id": operation_id,
                "applied": applies_to_counter,
                "remaining": sub.remaining,
            },
        )
        return _to_balance(sub)


def balance(user_id: str, now: Optional[datetime] = None) -> Balance:
    """
    Current quota for the dashboard.

    Counters are not reset here; an elapsed period shows as-is until the
    next deduction or sweep rolls it over.
    """
    now = normalize_now(now)
    with user_lock(user_id), get_db_session() as session:
        sub = load_or_provision(session, user_id, now)
        return _to_balance(sub)


@contextmanager
def charge(
    user_id: str,
    amount: int,
    *,
    reason: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Iterator[DeductResult]:
    """
    Reserve tokens for an external operation, refunding if it fails.

    Usage:
        with charge(user_id, CAPTION_TOKEN_COST, reason="caption"):
            caption = generate_caption(image)

    Raises:
        InsufficientTokensError / PlanInactiveError: the reservation was rejected
    """
    result = try_deduct(user_id, amount, reason=reason, idempotency_key=idempotency_key, now=now)
    if not result.committed:
        if result.reason == RejectionReason.PLAN_INACTIVE:
            raise PlanInactiveError("Subscription is not active")
        raise InsufficientTokensError(remaining=result.remaining, required=result.required)

    try:
        yield result
    except Exception:
        if result.operation_id is not None and result.amount > 0:
            refund(user_id, result.amount, operation_id=result.operation_id, now=now)
        raise

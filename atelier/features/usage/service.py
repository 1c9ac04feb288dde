"""
atelier/features/usage/service.py

Usage event log.

Handles:
- Append-only usage events (one per spend attempt or refund)
- Transaction history queries
- Counter reconciliation against the log

Events are written inside the ledger's transaction, so an event exists
exactly when its counter change was committed.
"""

from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import func, insert, select
from sqlalchemy.orm import Session

from atelier.core.clock import as_utc, normalize_now
from atelier.core.database import get_db_session
from atelier.core.database import usage_events
from atelier.core.locks import user_lock
from atelier.core.logging import log_event
from atelier.features.subscriptions.store import load_for_update, save_subscription
from atelier.models.usage_event import UsageEvent, UsageOutcome


def _row_to_event(row) -> UsageEvent:
    return UsageEvent(
        id=row.id,
        user_id=row.user_id,
        amount=row.amount,
        outcome=UsageOutcome(row.outcome),
        occurred_at=as_utc(row.occurred_at),
        reason=row.reason,
        balance_after=row.balance_after,
        operation_id=row.operation_id,
        idempotency_key=row.idempotency_key,
    )


def record_usage_event(
    session: Session,
    user_id: str,
    amount: int,
    outcome: UsageOutcome,
    occurred_at: datetime,
    *,
    reason: Optional[str] = None,
    balance_after: Optional[int] = None,
    operation_id: Optional[int] = None,
    idempotency_key: Optional[str] = None,
) -> UsageEvent:
    """Append one usage event in the caller's transaction."""
    result = session.execute(
        insert(usage_events).values(
            user_id=user_id,
            amount=amount,
            outcome=outcome.value,
            reason=reason,
            balance_after=balance_after,
            operation_id=operation_id,
            idempotency_key=idempotency_key,
            occurred_at=occurred_at,
        )
    )
    return UsageEvent(
        id=result.inserted_primary_key[0],
        user_id=user_id,
        amount=amount,
        outcome=outcome,
        occurred_at=occurred_at,
        reason=reason,
        balance_after=balance_after,
        operation_id=operation_id,
        idempotency_key=idempotency_key,
    )


def get_usage_event(session: Session, event_id: int) -> Optional[UsageEvent]:
    row = session.execute(
        select(usage_events).where(usage_events.c.id == event_id)
    ).first()
    return _row_to_event(row) if row else None


def find_committed_by_key(session: Session, user_id: str, idempotency_key: str) -> Optional[UsageEvent]:
    row = session.execute(
        select(usage_events)
        .where(usage_events.c.user_id == user_id)
        .where(usage_events.c.idempotency_key == idempotency_key)
        .where(usage_events.c.outcome == UsageOutcome.COMMITTED.value)
    ).first()
    return _row_to_event(row) if row else None


def refunded_amount(session: Session, operation_id: int) -> int:
    """Total already refunded against one committed operation."""
    total = session.execute(
        select(func.coalesce(func.sum(usage_events.c.amount), 0))
        .where(usage_events.c.operation_id == operation_id)
        .where(usage_events.c.outcome == UsageOutcome.REFUNDED.value)
    ).scalar()
    return int(total or 0)


def get_usage_history(
    user_id: str,
    *,
    limit: int = 50,
    start_time: Optional[datetime] = None,
    end_time: Optional[datetime] = None,
) -> List[UsageEvent]:
    """
    Get usage events for a user, newest first.

    Args:
        user_id: User to query
        limit: Maximum number of events
        start_time: Optional start of time window (inclusive)
        end_time: Optional end of time window (exclusive)
    """
    with get_db_session() as session:
        query = select(usage_events).where(usage_events.c.user_id == user_id)
        if start_time:
            query = query.where(usage_events.c.occurred_at >= as_utc(start_time))
        if end_time:
            query = query.where(usage_events.c.occurred_at < as_utc(end_time))
        rows = session.execute(
            query.order_by(usage_events.c.occurred_at.desc(), usage_events.c.id.desc()).limit(limit)
        ).all()
        return [_row_to_event(row) for row in rows]


def _net_usage_since(session: Session, user_id: str, since: datetime) -> int:
    """Committed minus refunded for operations committed since ``since``."""
    committed = session.execute(
        select(usage_events.c.id, usage_events.c.amount)
        .where(usage_events.c.user_id == user_id)
        .where(usage_events.c.outcome == UsageOutcome.COMMITTED.value)
        .where(usage_events.c.occurred_at >= since)
    ).all()
    if not committed:
        return 0
    op_ids = [row.id for row in committed]
    refunded = session.execute(
        select(func.coalesce(func.sum(usage_events.c.amount), 0))
        .where(usage_events.c.outcome == UsageOutcome.REFUNDED.value)
        .where(usage_events.c.operation_id.in_(op_ids))
    ).scalar()
    net = sum(row.amount for row in committed) - int(refunded or 0)
    return max(0, net)


def reconcile_tokens_used(user_id: str, *, fix: bool = False, now: Optional[datetime] = None) -> Dict[str, object]:
    """
    Compare the tokens_used counter against the usage log since the counter was last reset.

    Only refunds that reference an operation id can be attributed to a
    period; anonymous refunds are ignored, so a counter lowered by one
    shows up as drift.

    Args:
        user_id: User to reconcile
        fix: When True, overwrite the counter with the value rebuilt from the log

    Returns:
        {"user_id", "counter", "from_events", "drift", "fixed"}
    """
    now = normalize_now(now)
    with user_lock(user_id), get_db_session() as session:
        sub = load_for_update(session, user_id)
        if sub is None:
            return {"user_id": user_id, "counter": 0, "from_events": 0, "drift": 0, "fixed": False}

        rebuilt = _net_usage_since(session, user_id, sub.usage_since)
        drift = sub.tokens_used - rebuilt
        fixed = False
        if drift and fix:
            save_subscription(session, sub.model_copy(update={"tokens_used": rebuilt}), now)
            fixed = True

        if drift:
            log_event(
                "warning",
                "usage.reconcile.drift",
                user_id=user_id,
                extra={"counter": sub.tokens_used, "from_events": rebuilt, "drift": drift, "fixed": fixed},
            )

        return {
            "user_id": user_id,
            "counter": sub.tokens_used,
            "from_events": rebuilt,
            "drift": drift,
            "fixed": fixed,
        }

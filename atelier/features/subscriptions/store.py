"""
atelier/features/subscriptions/store.py

Row access for the ``subscriptions`` table.

Callers hold ``user_lock(user_id)`` and an open session; every load meant
for a read-check-write sequence goes through ``load_for_update`` so the
row is also locked at the database level where the backend supports it.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.orm import Session

from atelier.core.clock import as_utc
from atelier.core.database import subscriptions
from atelier.features.plans.service import get_free_plan, interval_length
from atelier.models.plan import PlanType
from atelier.models.subscription import Subscription, SubscriptionStatus


def row_to_subscription(row) -> Subscription:
    return Subscription(
        user_id=row.user_id,
        plan_type=PlanType(row.plan_type),
        status=SubscriptionStatus(row.status),
        tokens_limit=int(row.tokens_limit),
        tokens_used=int(row.tokens_used),
        current_period_start=as_utc(row.current_period_start),
        current_period_end=as_utc(row.current_period_end),
        usage_since=as_utc(row.usage_since),
        cancelled_at=as_utc(row.cancelled_at),
    )


def new_free_subscription(user_id: str, now: datetime) -> Subscription:
    """Signup state: free plan, free grant, fresh free period."""
    free = get_free_plan()
    return Subscription(
        user_id=user_id,
        plan_type=PlanType.FREE,
        status=SubscriptionStatus.ACTIVE,
        tokens_limit=free.tokens_per_period,
        tokens_used=0,
        current_period_start=now,
        current_period_end=now + interval_length(free.interval),
        usage_since=now,
    )


def load_for_update(session: Session, user_id: str) -> Optional[Subscription]:
    row = session.execute(
        select(subscriptions)
        .where(subscriptions.c.user_id == user_id)
        .with_for_update()
    ).first()
    if not row:
        return None
    return row_to_subscription(row)


def load_or_provision(session: Session, user_id: str, now: datetime) -> Subscription:
    """Lock the user's row, creating the free-tier subscription on first use."""
    existing = load_for_update(session, user_id)
    if existing is not None:
        return existing

    sub = new_free_subscription(user_id, now)
    session.execute(
        insert(subscriptions).values(
            user_id=sub.user_id,
            plan_type=sub.plan_type.value,
            status=sub.status.value,
            tokens_limit=sub.tokens_limit,
            tokens_used=sub.tokens_used,
            current_period_start=sub.current_period_start,
            current_period_end=sub.current_period_end,
            usage_since=sub.usage_since,
            created_at=now,
            updated_at=now,
        )
    )
    return sub


def save_subscription(session: Session, sub: Subscription, now: datetime) -> None:
    session.execute(
        update(subscriptions)
        .where(subscriptions.c.user_id == sub.user_id)
        .values(
            plan_type=sub.plan_type.value,
            status=sub.status.value,
            tokens_limit=sub.tokens_limit,
            tokens_used=sub.tokens_used,
            current_period_start=sub.current_period_start,
            current_period_end=sub.current_period_end,
            usage_since=sub.usage_since,
            cancelled_at=sub.cancelled_at,
            updated_at=now,
        )
    )


def list_due_user_ids(session: Session, now: datetime, limit: int) -> List[str]:
    """Users whose current period has ended, oldest first."""
    rows = session.execute(
        select(subscriptions.c.user_id)
        .where(subscriptions.c.current_period_end <= now)
        .order_by(subscriptions.c.current_period_end)
        .limit(limit)
    ).all()
    return [row.user_id for row in rows]

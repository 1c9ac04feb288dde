"""
atelier/features/rollover/service.py

Period rollover.

Handles:
- Renewal of an elapsed period (active paid plans and the free tier)
- Demotion of cancelled or expired subscriptions to the free tier
- Proactive sweep over every user whose period has ended

Rollover recomputes the new period from ``current_period_end`` instead of
accumulating deltas, so calling it twice is the same as calling it once:
the second call sees ``now < current_period_end`` and does nothing.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, Optional, Tuple

from sqlalchemy.orm import Session

from atelier.core.clock import normalize_now
from atelier.core.config import settings
from atelier.core.database import get_db_session
from atelier.core.errors import AppError
from atelier.core.locks import user_lock
from atelier.core.logging import log_event
from atelier.core.metrics import rollovers_total
from atelier.features.plans.service import current_grant, get_free_plan, interval_length, period_length
from atelier.features.subscriptions.store import list_due_user_ids, load_or_provision, save_subscription
from atelier.models.plan import PlanType
from atelier.models.subscription import Subscription, SubscriptionStatus


class RolloverKind(str, Enum):
    NONE = "none"
    RENEWED = "renewed"
    DEMOTED = "demoted"


def compute_rollover(sub: Subscription, now: datetime) -> Tuple[Subscription, RolloverKind]:
    """Pure transition for an elapsed period. No-op while the period is running."""
    if not sub.period_elapsed(now):
        return sub, RolloverKind.NONE

    if sub.status == SubscriptionStatus.ACTIVE:
        length = period_length(sub.plan_type)
        # Catch up whole periods for users idle across several of them.
        skipped = (now - sub.current_period_end) // length
        start = sub.current_period_end + skipped * length
        renewed = sub.model_copy(update={
            "tokens_used": 0,
            "tokens_limit": current_grant(sub.plan_type),
            "current_period_start": start,
            "current_period_end": start + length,
            "usage_since": start,
        })
        return renewed, RolloverKind.RENEWED

    # Cancelled (grace over) or expired: resolve straight to a fresh free tier.
    free = get_free_plan()
    demoted = sub.model_copy(update={
        "plan_type": PlanType.FREE,
        "status": SubscriptionStatus.ACTIVE,
        "tokens_limit": free.tokens_per_period,
        "tokens_used": 0,
        "current_period_start": now,
        "current_period_end": now + interval_length(free.interval),
        "usage_since": now,
        "cancelled_at": None,
    })
    return demoted, RolloverKind.DEMOTED


def apply_rollover(session: Session, sub: Subscription, now: datetime) -> Subscription:
    """Roll ``sub`` over inside the caller's critical section and persist it."""
    return _apply(session, sub, now)[0]


def _apply(session: Session, sub: Subscription, now: datetime) -> Tuple[Subscription, RolloverKind]:
    rolled, kind = compute_rollover(sub, now)
    if kind == RolloverKind.NONE:
        return sub, kind

    save_subscription(session, rolled, now)
    rollovers_total.inc({"kind": kind.value})
    log_event(
        "info",
        f"rollover.{kind.value}",
        user_id=sub.user_id,
        extra={
            "previous_plan": sub.plan_type.value,
            "previous_status": sub.status.value,
            "plan_type": rolled.plan_type.value,
            "tokens_limit": rolled.tokens_limit,
            "period_end": rolled.current_period_end.isoformat(),
        },
    )
    return rolled, kind


def rollover(user_id: str, now: Optional[datetime] = None) -> Subscription:
    """
    Reconcile elapsed time for one user.

    Args:
        user_id: User to roll over
        now: Fixed timestamp for deterministic runs (defaults to now())

    Returns:
        The subscription after reconciliation
    """
    return _rollover_locked(user_id, normalize_now(now))[0]


def _rollover_locked(user_id: str, now: datetime) -> Tuple[Subscription, RolloverKind]:
    with user_lock(user_id), get_db_session() as session:
        sub = load_or_provision(session, user_id, now)
        return _apply(session, sub, now)


def sweep_rollovers(now: Optional[datetime] = None, limit: Optional[int] = None) -> Dict[str, object]:
    """
    Roll over every user whose period has ended (meant for a periodic job).

    Each user is handled in its own critical section and transaction. A
    failure for one user is logged and counted and the sweep moves on.
    """
    now = normalize_now(now)
    batch = limit if limit is not None else settings.ROLLOVER_SWEEP_LIMIT

    with get_db_session() as session:
        due = list_due_user_ids(session, now, batch)

    stats = {"scanned": len(due), "renewed": 0, "demoted": 0, "skipped": 0, "failed": 0}
    for user_id in due:
        try:
            _, kind = _rollover_locked(user_id, now)
        except AppError as exc:
            stats["failed"] += 1
            log_event(
                "error",
                "rollover.sweep.failed",
                user_id=user_id,
                error_code=exc.code,
                extra={"error": exc.message},
            )
            continue
        if kind == RolloverKind.NONE:
            # Rolled over concurrently (e.g. a lazy rollover in try_deduct).
            stats["skipped"] += 1
        else:
            stats[kind.value] += 1

    log_event("info", "rollover.sweep.complete", extra=stats)
    return {**stats, "timestamp": now.isoformat()}

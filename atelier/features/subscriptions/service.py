"""
atelier/features/subscriptions/service.py

Subscription lifecycle.

Handles:
- Signup provisioning (free tier)
- Plan activation and plan changes
- Cancellation with grace until period end
- Reactivation of a cancelled subscription

Each command reconciles an elapsed period first, inside the same critical
section, so it always acts on the current period.

State machine:
    Free      --activate-->   Active
    Active    --cancel-->     Cancelled   (access kept until period_end)
    Cancelled --reactivate--> Active
    Cancelled --activate-->   Active      (plan change on the paid-for period)
    Cancelled --period end--> Free        (see rollover)
"""

from datetime import datetime
from typing import List, Optional, Union

from atelier.core.clock import normalize_now
from atelier.core.database import get_db_session
from atelier.core.errors import NotCancelledError
from atelier.core.locks import user_lock
from atelier.core.logging import log_event
from atelier.core.metrics import lifecycle_transitions_total
from atelier.features.plans import service as plans_service
from atelier.features.plans.service import get_plan, get_purchasable_plan, interval_length
from atelier.features.rollover.service import apply_rollover
from atelier.features.subscriptions.store import load_for_update, load_or_provision, save_subscription
from atelier.models.plan import Plan, PlanType
from atelier.models.subscription import LifecycleState, Subscription, SubscriptionStatus


def list_plans() -> List[Plan]:
    """Purchasable plans as shown on the pricing page."""
    return plans_service.list_plans()


def provision_subscription(user_id: str, now: Optional[datetime] = None) -> Subscription:
    """Create the free-tier subscription for a new user. Idempotent."""
    now = normalize_now(now)
    with user_lock(user_id), get_db_session() as session:
        existing = load_for_update(session, user_id)
        if existing is not None:
            return existing
        sub = load_or_provision(session, user_id, now)
        lifecycle_transitions_total.inc({"event": "provisioned"})
        log_event("info", "subscription.provisioned", user_id=user_id, extra={"tokens_limit": sub.tokens_limit})
        return sub


def get_subscription(user_id: str, now: Optional[datetime] = None) -> Subscription:
    now = normalize_now(now)
    with user_lock(user_id), get_db_session() as session:
        return load_or_provision(session, user_id, now)


def _plan_change(sub: Subscription, plan: Plan, now: datetime) -> Subscription:
    """Switch a paid-for period to ``plan``; usage so far carries over."""
    current = get_plan(sub.plan_type)
    update = {
        "plan_type": plan.plan_id,
        "status": SubscriptionStatus.ACTIVE,
        "tokens_limit": plan.tokens_per_period,
        "cancelled_at": None,
    }
    if current is None or current.interval != plan.interval:
        update["current_period_start"] = now
        update["current_period_end"] = now + interval_length(plan.interval)
    return sub.model_copy(update=update)


def _fresh_activation(sub: Subscription, plan: Plan, now: datetime) -> Subscription:
    return sub.model_copy(update={
        "plan_type": plan.plan_id,
        "status": SubscriptionStatus.ACTIVE,
        "tokens_limit": plan.tokens_per_period,
        "tokens_used": 0,
        "current_period_start": now,
        "current_period_end": now + interval_length(plan.interval),
        "usage_since": now,
        "cancelled_at": None,
    })


def activate(user_id: str, plan_id: Union[str, PlanType], now: Optional[datetime] = None) -> Subscription:
    """
    Activate (or switch to) a paid plan.

    From Free or Expired: new period starting now, counters reset.
    From Active or Cancelled: new grant applies immediately, tokens_used is
    kept, and the period restarts only when the billing interval changes.

    Raises:
        UnknownPlanError: plan_id is unknown or not purchasable (no state change)
    """
    plan = get_purchasable_plan(plan_id)
    now = normalize_now(now)

    with user_lock(user_id), get_db_session() as session:
        sub = apply_rollover(session, load_or_provision(session, user_id, now), now)
        previous_state = sub.state

        if previous_state in (LifecycleState.ACTIVE, LifecycleState.CANCELLED):
            updated = _plan_change(sub, plan, now)
        else:
            updated = _fresh_activation(sub, plan, now)
        save_subscription(session, updated, now)

    lifecycle_transitions_total.inc({"event": "activated"})
    log_event(
        "info",
        "subscription.activated",
        user_id=user_id,
        extra={
            "plan_type": plan.plan_id.value,
            "previous_plan": sub.plan_type.value,
            "previous_state": previous_state.value,
            "tokens_limit": updated.tokens_limit,
            "period_end": updated.current_period_end.isoformat(),
        },
    )
    return updated


def cancel(user_id: str, now: Optional[datetime] = None) -> Subscription:
    """
    Cancel at period end. Tokens stay spendable until then.

    No-op (returns the current subscription) when already cancelled or on
    the free tier.
    """
    now = normalize_now(now)

    with user_lock(user_id), get_db_session() as session:
        sub = apply_rollover(session, load_or_provision(session, user_id, now), now)
        if sub.state != LifecycleState.ACTIVE:
            return sub
        updated = sub.model_copy(update={"status": SubscriptionStatus.CANCELLED, "cancelled_at": now})
        save_subscription(session, updated, now)

    lifecycle_transitions_total.inc({"event": "cancelled"})
    log_event(
        "info",
        "subscription.cancelled",
        user_id=user_id,
        extra={"plan_type": updated.plan_type.value, "access_until": updated.current_period_end.isoformat()},
    )
    return updated


def reactivate(user_id: str, now: Optional[datetime] = None) -> Subscription:
    """
    Undo a cancellation before the period ends.

    Raises:
        NotCancelledError: subscription is not cancelled
    """
    now = normalize_now(now)

    with user_lock(user_id), get_db_session() as session:
        sub = apply_rollover(session, load_or_provision(session, user_id, now), now)
        updated = None
        if sub.state == LifecycleState.CANCELLED:
            updated = sub.model_copy(update={"status": SubscriptionStatus.ACTIVE, "cancelled_at": None})
            save_subscription(session, updated, now)

    # Raised after commit so a rollover done above is kept.
    if updated is None:
        raise NotCancelledError(f"Subscription of user {user_id} is {sub.state.value}, not cancelled")

    lifecycle_transitions_total.inc({"event": "reactivated"})
    log_event("info", "subscription.reactivated", user_id=user_id, extra={"plan_type": updated.plan_type.value})
    return updated

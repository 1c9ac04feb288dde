"""
atelier/models/subscription.py

Subscription snapshot (one per user).

The row in ``subscriptions`` is the single source of truth for both the
quota counters and the lifecycle status; this model is an immutable view
of it taken inside a critical section.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict

from atelier.models.plan import PlanType


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class LifecycleState(str, Enum):
    """State machine view derived from (plan_type, status)."""
    FREE = "free"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


SPEND_ELIGIBLE_STATES = frozenset({LifecycleState.FREE, LifecycleState.ACTIVE, LifecycleState.CANCELLED})


class Subscription(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    plan_type: PlanType
    status: SubscriptionStatus
    tokens_limit: int
    tokens_used: int
    current_period_start: datetime
    current_period_end: datetime
    # Start of the window tokens_used counts; survives plan changes, reset with the counter.
    usage_since: datetime
    cancelled_at: Optional[datetime] = None

    @property
    def state(self) -> LifecycleState:
        if self.status == SubscriptionStatus.EXPIRED:
            return LifecycleState.EXPIRED
        if self.status == SubscriptionStatus.CANCELLED:
            return LifecycleState.CANCELLED
        if self.plan_type == PlanType.FREE:
            return LifecycleState.FREE
        return LifecycleState.ACTIVE

    @property
    def remaining(self) -> int:
        return max(0, self.tokens_limit - self.tokens_used)

    @property
    def spend_eligible(self) -> bool:
        return self.state in SPEND_ELIGIBLE_STATES

    def period_elapsed(self, now: datetime) -> bool:
        return now >= self.current_period_end

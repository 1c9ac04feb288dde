"""
atelier/models/ledger.py

Quota ledger results.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict

from atelier.models.plan import PlanType
from atelier.models.subscription import SubscriptionStatus


class DeductStatus(str, Enum):
    COMMITTED = "committed"
    REJECTED = "rejected"


class RejectionReason(str, Enum):
    INSUFFICIENT_TOKENS = "insufficient_tokens"
    PLAN_INACTIVE = "plan_inactive"


class DeductResult(BaseModel):
    """
    Outcome of a try_deduct call.

    Rejections are ordinary results, not exceptions: the caller shows an
    upgrade prompt (insufficient_tokens) or redirects to reactivation
    (plan_inactive).
    """
    model_config = ConfigDict(frozen=True)

    status: DeductStatus
    reason: Optional[RejectionReason] = None
    amount: int
    remaining: int
    required: int
    operation_id: Optional[int] = None

    @property
    def committed(self) -> bool:
        return self.status == DeductStatus.COMMITTED


class Balance(BaseModel):
    model_config = ConfigDict(frozen=True)

    remaining: int
    used: int
    limit: int
    percent_used: float
    period_start: datetime
    period_end: datetime
    plan_type: PlanType
    status: SubscriptionStatus

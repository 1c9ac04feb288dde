"""
atelier/models/usage_event.py

UsageEvent: one append-only record per spend attempt or refund.

Outcomes:
- committed: tokens were deducted
- rejected_insufficient: not enough tokens left in the period
- rejected_inactive: subscription not spend-eligible
- refunded: tokens returned after a failed paid operation

``operation_id`` on a refund points at the committed event it reverses.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class UsageOutcome(str, Enum):
    COMMITTED = "committed"
    REJECTED_INSUFFICIENT = "rejected_insufficient"
    REJECTED_INACTIVE = "rejected_inactive"
    REFUNDED = "refunded"


class UsageEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    user_id: str
    amount: int
    outcome: UsageOutcome
    occurred_at: datetime
    reason: Optional[str] = None
    balance_after: Optional[int] = None
    operation_id: Optional[int] = None
    idempotency_key: Optional[str] = None

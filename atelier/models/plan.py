"""
atelier/models/plan.py

Plan catalog entries.

Plans are read-only reference data. The free plan is the signup and
demotion target and is never offered for purchase.
"""

from enum import Enum
from pydantic import BaseModel, ConfigDict


class PlanType(str, Enum):
    FREE = "free"
    MONTHLY = "monthly"
    SIX_MONTH = "sixMonth"
    ANNUAL = "annual"


class PlanInterval(str, Enum):
    FREE = "free"
    MONTH = "month"
    SIX_MONTHS = "sixmonths"
    YEAR = "year"


class Plan(BaseModel):
    """
    Plan represents a billing tier and its token grant.

    Examples:
    - free (1000 tokens / 30 days, not purchasable)
    - monthly
    - sixMonth
    - annual
    """
    model_config = ConfigDict(frozen=True)

    plan_id: PlanType
    name: str
    price: float
    interval: PlanInterval
    tokens_per_period: int
    purchasable: bool = True

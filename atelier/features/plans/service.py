"""
atelier/features/plans/service.py

Plan catalog.

Handles:
- Catalog construction from settings (token grants and prices are config)
- Plan lookup (purchasable vs. internal free plan)
- Billing interval lengths

The catalog is rebuilt on every read so a changed grant is picked up by
the next rollover without a restart. It is never mutated at runtime and
needs no locking.
"""

from datetime import timedelta
from typing import Dict, List, Optional, Union

from atelier.core.config import settings
from atelier.core.errors import UnknownPlanError
from atelier.models.plan import Plan, PlanInterval, PlanType


# Whole-period resets only; calendar-month proration is out of scope.
INTERVAL_DAYS = {
    PlanInterval.MONTH: 30,
    PlanInterval.SIX_MONTHS: 180,
    PlanInterval.YEAR: 365,
}


def get_plan_catalog() -> Dict[PlanType, Plan]:
    return {
        PlanType.FREE: Plan(
            plan_id=PlanType.FREE,
            name="Free",
            price=0.0,
            interval=PlanInterval.FREE,
            tokens_per_period=settings.FREE_TOKENS_PER_PERIOD,
            purchasable=False,
        ),
        PlanType.MONTHLY: Plan(
            plan_id=PlanType.MONTHLY,
            name="Monthly",
            price=settings.MONTHLY_PRICE,
            interval=PlanInterval.MONTH,
            tokens_per_period=settings.MONTHLY_TOKENS_PER_PERIOD,
        ),
        PlanType.SIX_MONTH: Plan(
            plan_id=PlanType.SIX_MONTH,
            name="Six Months",
            price=settings.SIX_MONTH_PRICE,
            interval=PlanInterval.SIX_MONTHS,
            tokens_per_period=settings.SIX_MONTH_TOKENS_PER_PERIOD,
        ),
        PlanType.ANNUAL: Plan(
            plan_id=PlanType.ANNUAL,
            name="Annual",
            price=settings.ANNUAL_PRICE,
            interval=PlanInterval.YEAR,
            tokens_per_period=settings.ANNUAL_TOKENS_PER_PERIOD,
        ),
    }


def _coerce_plan_type(plan_id: Union[str, PlanType]) -> Optional[PlanType]:
    try:
        return PlanType(plan_id)
    except ValueError:
        return None


def get_plan(plan_id: Union[str, PlanType]) -> Optional[Plan]:
    """Get any plan, including the internal free plan. None if unknown."""
    plan_type = _coerce_plan_type(plan_id)
    if plan_type is None:
        return None
    return get_plan_catalog().get(plan_type)


def get_purchasable_plan(plan_id: Union[str, PlanType]) -> Plan:
    """
    Resolve a plan a user may activate.

    Raises:
        UnknownPlanError: If plan_id is unknown or is the free plan
    """
    plan = get_plan(plan_id)
    if plan is None or not plan.purchasable:
        raise UnknownPlanError(f"Plan {plan_id} not found")
    return plan


def get_free_plan() -> Plan:
    return get_plan_catalog()[PlanType.FREE]


def list_plans() -> List[Plan]:
    """Purchasable plans, cheapest first."""
    plans = [plan for plan in get_plan_catalog().values() if plan.purchasable]
    return sorted(plans, key=lambda plan: plan.price)


def interval_length(interval: PlanInterval) -> timedelta:
    if interval == PlanInterval.FREE:
        return timedelta(days=settings.FREE_PERIOD_DAYS)
    return timedelta(days=INTERVAL_DAYS[interval])


def period_length(plan_type: Union[str, PlanType]) -> timedelta:
    plan = get_plan(plan_type)
    if plan is None:
        raise UnknownPlanError(f"Plan {plan_type} not found")
    return interval_length(plan.interval)


def current_grant(plan_type: Union[str, PlanType]) -> int:
    """Tokens granted per period for plan_type, as currently configured."""
    plan = get_plan(plan_type)
    if plan is None:
        raise UnknownPlanError(f"Plan {plan_type} not found")
    return plan.tokens_per_period

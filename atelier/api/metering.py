"""
Usage metering API: token quota, subscription lifecycle, entitlements.
"""
from typing import Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, field_validator

from atelier.core.admin_auth import AdminActor, require_admin
from atelier.core.errors import InsufficientTokensError, PlanInactiveError
from atelier.core.logging import log_event
from atelier.features.entitlements.service import (
    can_create,
    cancel_add_on,
    effective_cap,
    list_add_ons,
    purchase_add_on,
)
from atelier.features.ledger.formatting import format_percent_used, format_token_count, usage_level
from atelier.features.ledger.service import balance, refund, try_deduct
from atelier.features.rollover.service import sweep_rollovers
from atelier.features.subscriptions.service import (
    activate,
    cancel,
    get_subscription,
    list_plans,
    reactivate,
)
from atelier.features.usage.service import get_usage_history
from atelier.models.ledger import RejectionReason

router = APIRouter(prefix="/v1/metering", tags=["metering"])


class DeductRequest(BaseModel):
    amount: int
    reason: Optional[str] = None
    idempotency_key: Optional[str] = None

    @field_validator("reason", "idempotency_key")
    @classmethod
    def _trim(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None


class RefundRequest(BaseModel):
    amount: int
    operation_id: Optional[int] = None


class ActivateRequest(BaseModel):
    plan_id: str

    @field_validator("plan_id")
    @classmethod
    def _trim(cls, value: str) -> str:
        return value.strip()


class AddOnRequest(BaseModel):
    resource_kind: str
    quantity: int = 1
    idempotency_key: Optional[str] = None

    @field_validator("resource_kind", "idempotency_key")
    @classmethod
    def _trim(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None


class SweepRequest(BaseModel):
    limit: Optional[int] = Field(default=None, gt=0)


def _balance_payload(user_id: str, bal) -> Dict:
    return {
        "userId": user_id,
        **bal.model_dump(mode="json"),
        "percent_display": format_percent_used(bal.percent_used),
        "remaining_display": format_token_count(bal.remaining),
        "usage_level": usage_level(bal.percent_used).value,
    }


@router.get("/plans")
def get_plans() -> Dict:
    """Purchasable plans, cheapest first."""
    plans = list_plans()
    return {"plans": [plan.model_dump(mode="json") for plan in plans], "count": len(plans)}


@router.get("/users/{user_id}/balance")
def get_balance(user_id: str) -> Dict:
    return _balance_payload(user_id, balance(user_id))


@router.post("/users/{user_id}/deduct")
def deduct(user_id: str, body: DeductRequest) -> Dict:
    """Deduct tokens; a rejection is returned as a 403 error contract."""
    result = try_deduct(user_id, body.amount, reason=body.reason, idempotency_key=body.idempotency_key)
    if result.reason == RejectionReason.PLAN_INACTIVE:
        raise PlanInactiveError("Subscription is not active")
    if result.reason == RejectionReason.INSUFFICIENT_TOKENS:
        raise InsufficientTokensError(remaining=result.remaining, required=result.required)
    return {"userId": user_id, **result.model_dump(mode="json")}


@router.post("/users/{user_id}/refund")
def post_refund(user_id: str, body: RefundRequest) -> Dict:
    bal = refund(user_id, body.amount, operation_id=body.operation_id)
    return _balance_payload(user_id, bal)


@router.get("/users/{user_id}/subscription")
def get_user_subscription(user_id: str) -> Dict:
    sub = get_subscription(user_id)
    return {**sub.model_dump(mode="json"), "state": sub.state.value}


@router.post("/users/{user_id}/subscription/activate")
def post_activate(user_id: str, body: ActivateRequest) -> Dict:
    sub = activate(user_id, body.plan_id)
    return {**sub.model_dump(mode="json"), "state": sub.state.value}


@router.post("/users/{user_id}/subscription/cancel")
def post_cancel(user_id: str) -> Dict:
    sub = cancel(user_id)
    return {**sub.model_dump(mode="json"), "state": sub.state.value}


@router.post("/users/{user_id}/subscription/reactivate")
def post_reactivate(user_id: str) -> Dict:
    sub = reactivate(user_id)
    return {**sub.model_dump(mode="json"), "state": sub.state.value}


@router.get("/users/{user_id}/add-ons")
def get_add_ons(user_id: str, active_only: bool = True) -> Dict:
    add_ons = list_add_ons(user_id, active_only=active_only)
    return {"userId": user_id, "add_ons": [a.model_dump(mode="json") for a in add_ons], "count": len(add_ons)}


@router.post("/users/{user_id}/add-ons")
def post_add_on(user_id: str, body: AddOnRequest) -> Dict:
    add_on = purchase_add_on(
        user_id,
        body.resource_kind,
        body.quantity,
        idempotency_key=body.idempotency_key,
    )
    return add_on.model_dump(mode="json")


@router.delete("/users/{user_id}/add-ons/{add_on_id}")
def delete_add_on(user_id: str, add_on_id: int) -> Dict:
    return cancel_add_on(user_id, add_on_id).model_dump(mode="json")


@router.get("/users/{user_id}/entitlements/{resource_kind}")
def get_entitlement(user_id: str, resource_kind: str, current_count: Optional[int] = Query(None, ge=0)) -> Dict:
    """Effective cap; with current_count, also whether one more resource fits."""
    cap = effective_cap(user_id, resource_kind)
    payload = {"userId": user_id, **cap.model_dump(mode="json")}
    if current_count is not None:
        payload["current_count"] = current_count
        payload["can_create"] = can_create(user_id, resource_kind, current_count)
    return payload


@router.get("/users/{user_id}/usage")
def get_usage(user_id: str, limit: int = Query(50, ge=1, le=500)) -> Dict:
    events = get_usage_history(user_id, limit=limit)
    return {"userId": user_id, "events": [e.model_dump(mode="json") for e in events], "count": len(events)}


@router.post("/admin/rollover/sweep")
def post_sweep(body: Optional[SweepRequest] = None, actor: AdminActor = Depends(require_admin)) -> Dict:
    """
    Run the rollover sweep once (normally driven by a scheduler).

    Always runs against the real clock; back-dated or future sweeps are
    only available from the admin CLI.
    """
    body = body or SweepRequest()
    log_event("info", "admin.rollover.sweep", extra={"actor": actor.actor_id, "limit": body.limit})
    return sweep_rollovers(limit=body.limit)

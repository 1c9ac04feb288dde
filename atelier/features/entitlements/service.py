"""
atelier/features/entitlements/service.py

Resource caps and purchased add-ons.

Handles:
- Base allowance per plan and resource kind
- Add-on purchase and cancellation (idempotent)
- Effective cap = base allowance + active add-on quantity
- Advisory can_create checks

Add-on counts live in ``entitlement_add_ons``; client-side storage is never
trusted for them. can_create does not reserve a slot, so callers re-check
right before the write that creates the resource.
"""

from datetime import datetime
from typing import Dict, List, Optional, Union

from sqlalchemy import func, insert, select, true, update

from atelier.core.clock import as_utc, normalize_now
from atelier.core.config import settings
from atelier.core.database import entitlement_add_ons, get_db_session
from atelier.core.errors import InvalidAmountError, NotFoundError, ValidationError
from atelier.core.locks import user_lock
from atelier.core.logging import log_event
from atelier.features.rollover.service import compute_rollover
from atelier.features.subscriptions.store import load_or_provision
from atelier.models.add_on import AddOn, EntitlementCap, ResourceKind
from atelier.models.plan import PlanType
from atelier.models.subscription import LifecycleState


def _base_allowances() -> Dict[ResourceKind, Dict[PlanType, int]]:
    paid = settings.BRAND_PROFILE_BASE_SLOTS
    return {
        ResourceKind.BRAND_PROFILE: {
            PlanType.FREE: 0,
            PlanType.MONTHLY: paid,
            PlanType.SIX_MONTH: paid,
            PlanType.ANNUAL: paid,
        },
    }


def _add_on_prices() -> Dict[ResourceKind, float]:
    return {ResourceKind.BRAND_PROFILE: settings.BRAND_PROFILE_ADD_ON_PRICE}


def _coerce_kind(resource_kind: Union[str, ResourceKind]) -> ResourceKind:
    try:
        return ResourceKind(resource_kind)
    except ValueError:
        raise ValidationError(f"Unknown resource kind: {resource_kind}")


def _row_to_add_on(row) -> AddOn:
    return AddOn(
        id=row.id,
        user_id=row.user_id,
        resource_kind=ResourceKind(row.resource_kind),
        quantity=row.quantity,
        unit_price=float(row.unit_price),
        active=bool(row.active),
        idempotency_key=row.idempotency_key,
        created_at=as_utc(row.created_at),
        cancelled_at=as_utc(row.cancelled_at),
    )


def base_allowance(plan_type: Union[str, PlanType], resource_kind: Union[str, ResourceKind]) -> int:
    """Slots included with a plan before any add-on."""
    kind = _coerce_kind(resource_kind)
    try:
        plan = PlanType(plan_type)
    except ValueError:
        raise ValidationError(f"Unknown plan type: {plan_type}")
    return _base_allowances()[kind].get(plan, 0)


def purchase_add_on(
    user_id: str,
    resource_kind: Union[str, ResourceKind],
    quantity: int,
    *,
    idempotency_key: Optional[str] = None,
    now: Optional[datetime] = None,
) -> AddOn:
    """
    Record a purchased add-on at the catalog unit price.

    Payment is settled upstream; this only records the entitlement. A retry
    with the same idempotency_key returns the add-on created the first time.

    Raises:
        InvalidAmountError: quantity is not a positive integer
        ValidationError: unknown resource kind
    """
    kind = _coerce_kind(resource_kind)
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise InvalidAmountError(f"Add-on quantity must be a positive integer, got {quantity!r}")
    now = normalize_now(now)

    with user_lock(user_id), get_db_session() as session:
        load_or_provision(session, user_id, now)

        if idempotency_key:
            row = session.execute(
                select(entitlement_add_ons)
                .where(entitlement_add_ons.c.user_id == user_id)
                .where(entitlement_add_ons.c.idempotency_key == idempotency_key)
            ).first()
            if row:
                return _row_to_add_on(row)

        unit_price = _add_on_prices()[kind]
        result = session.execute(
            insert(entitlement_add_ons).values(
                user_id=user_id,
                resource_kind=kind.value,
                quantity=quantity,
                unit_price=unit_price,
                active=True,
                idempotency_key=idempotency_key,
                created_at=now,
            )
        )
        add_on = AddOn(
            id=result.inserted_primary_key[0],
            user_id=user_id,
            resource_kind=kind,
            quantity=quantity,
            unit_price=unit_price,
            active=True,
            idempotency_key=idempotency_key,
            created_at=now,
        )

    log_event(
        "info",
        "add_on.purchased",
        user_id=user_id,
        extra={"add_on_id": add_on.id, "resource_kind": kind.value, "quantity": quantity, "unit_price": unit_price},
    )
    return add_on


def cancel_add_on(user_id: str, add_on_id: int, now: Optional[datetime] = None) -> AddOn:
    """
    Deactivate an add-on. Cancelling an inactive add-on returns it unchanged.

    Raises:
        NotFoundError: add-on does not exist or belongs to another user
    """
    now = normalize_now(now)

    with user_lock(user_id), get_db_session() as session:
        row = session.execute(
            select(entitlement_add_ons)
            .where(entitlement_add_ons.c.id == add_on_id)
            .with_for_update()
        ).first()
        if not row or row.user_id != user_id:
            raise NotFoundError(f"Add-on {add_on_id} not found for user {user_id}")

        add_on = _row_to_add_on(row)
        if not add_on.active:
            return add_on

        session.execute(
            update(entitlement_add_ons)
            .where(entitlement_add_ons.c.id == add_on_id)
            .values(active=False, cancelled_at=now)
        )
        add_on = add_on.model_copy(update={"active": False, "cancelled_at": now})

    log_event(
        "info",
        "add_on.cancelled",
        user_id=user_id,
        extra={"add_on_id": add_on_id, "resource_kind": add_on.resource_kind.value},
    )
    return add_on


def list_add_ons(
    user_id: str,
    *,
    active_only: bool = True,
    resource_kind: Optional[Union[str, ResourceKind]] = None,
) -> List[AddOn]:
    with get_db_session() as session:
        query = select(entitlement_add_ons).where(entitlement_add_ons.c.user_id == user_id)
        if active_only:
            query = query.where(entitlement_add_ons.c.active == true())
        if resource_kind is not None:
            query = query.where(entitlement_add_ons.c.resource_kind == _coerce_kind(resource_kind).value)
        rows = session.execute(query.order_by(entitlement_add_ons.c.id)).all()
        return [_row_to_add_on(row) for row in rows]


def effective_cap(
    user_id: str,
    resource_kind: Union[str, ResourceKind],
    now: Optional[datetime] = None,
) -> EntitlementCap:
    """
    Base allowance of the user's current plan plus active add-ons.

    A period that has ended but not yet been rolled over is evaluated as it
    will be after rollover (a lapsed cancellation counts as free).
    """
    kind = _coerce_kind(resource_kind)
    now = normalize_now(now)

    with user_lock(user_id), get_db_session() as session:
        sub, _ = compute_rollover(load_or_provision(session, user_id, now), now)
        add_on_quantity = session.execute(
            select(func.coalesce(func.sum(entitlement_add_ons.c.quantity), 0))
            .where(entitlement_add_ons.c.user_id == user_id)
            .where(entitlement_add_ons.c.resource_kind == kind.value)
            .where(entitlement_add_ons.c.active == true())
        ).scalar()

    add_on_quantity = int(add_on_quantity or 0)
    if settings.SUSPEND_ADD_ONS_WHEN_CANCELLED and sub.state in (LifecycleState.CANCELLED, LifecycleState.FREE):
        add_on_quantity = 0

    base = base_allowance(sub.plan_type, kind)
    return EntitlementCap(
        resource_kind=kind,
        base_allowance=base,
        add_on_quantity=add_on_quantity,
        effective_cap=base + add_on_quantity,
    )


def can_create(
    user_id: str,
    resource_kind: Union[str, ResourceKind],
    current_count: int,
    now: Optional[datetime] = None,
) -> bool:
    """True when one more resource of this kind fits under the effective cap."""
    if current_count < 0:
        raise ValidationError(f"current_count must be non-negative, got {current_count}")
    cap = effective_cap(user_id, resource_kind, now=now)
    return current_count < cap.effective_cap

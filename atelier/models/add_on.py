"""
atelier/models/add_on.py

Purchased entitlement add-ons.

Add-ons raise a resource cap (e.g. brand profile slots) independently of
the subscription's billing period and stay active until cancelled.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class ResourceKind(str, Enum):
    BRAND_PROFILE = "brand_profile"


class AddOn(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: str
    resource_kind: ResourceKind
    quantity: int
    unit_price: float
    active: bool
    idempotency_key: Optional[str] = None
    created_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class EntitlementCap(BaseModel):
    """Effective cap for one resource kind."""
    model_config = ConfigDict(frozen=True)

    resource_kind: ResourceKind
    base_allowance: int
    add_on_quantity: int
    effective_cap: int

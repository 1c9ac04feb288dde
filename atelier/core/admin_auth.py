"""
Admin authentication for operator routes (rollover sweep).

Operators authenticate with a shared secret in the X-Admin-Key header,
compared against ADMIN_API_KEY (env) or settings.ADMIN_KEY. With no key
configured the admin routes answer 503 instead of running unauthenticated.
"""
import hashlib
import hmac
import os
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from atelier.core.config import settings
from atelier.core.errors import AdminAuthUnconfiguredError, UnauthorizedError


@dataclass
class AdminActor:
    """Authenticated operator, recorded in admin logs."""
    actor_id: str  # "key:<hash>"
    auth_mechanism: str = "x_admin_key"


def get_admin_api_key() -> Optional[str]:
    env_key = os.getenv("ADMIN_API_KEY")
    if env_key:
        return env_key
    return settings.ADMIN_KEY


def verify_admin_key(request: Request) -> Optional[AdminActor]:
    """Return the actor for a valid X-Admin-Key header, else None."""
    expected_key = get_admin_api_key()
    if not expected_key:
        return None

    header_key = request.headers.get("X-Admin-Key", "").strip()
    if not header_key or not hmac.compare_digest(header_key, expected_key):
        return None

    key_hash = hashlib.sha256(header_key.encode()).hexdigest()[:16]
    return AdminActor(actor_id=f"key:{key_hash}")


def require_admin(request: Request) -> AdminActor:
    """
    FastAPI dependency: require admin authentication.

    Usage:
        @router.post("/admin/endpoint")
        def admin_endpoint(actor: AdminActor = Depends(require_admin)):
            ...
    """
    if not get_admin_api_key():
        raise AdminAuthUnconfiguredError("Admin authentication not configured; set ADMIN_KEY")

    actor = verify_admin_key(request)
    if actor is None:
        raise UnauthorizedError("Unauthorized: invalid or missing X-Admin-Key")
    return actor

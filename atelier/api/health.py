"""
Health endpoints for the metering service.

Lightweight probes for operational monitoring; no secrets are exposed.
"""

import logging
import time

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from atelier.core.database import check_connection
from atelier.core.logging import latency_bucket_ms

logger = logging.getLogger("atelier")

router = APIRouter(tags=["health"])


@router.get("/healthz")
def healthz():
    """Liveness plus database connectivity."""
    start = time.perf_counter()
    connected = check_connection()
    latency_ms = (time.perf_counter() - start) * 1000

    if not connected:
        logger.error("[healthz] database unreachable")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})
    return {"status": "ok", "db": {"connected": True, "latency_bucket": latency_bucket_ms(latency_ms)}}

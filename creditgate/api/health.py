"""
Health and metrics endpoints.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse, PlainTextResponse

from creditgate.core.database import check_connection
from creditgate.core.metrics import METRICS

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity."""
    if not check_connection():
        logger.error("[readyz] database unreachable")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})
    return {"status": "ok"}


@router.get("/metrics", response_class=PlainTextResponse)
def metrics():
    return PlainTextResponse(METRICS.export_prometheus(), media_type="text/plain; version=0.0.4")

"""
Health and diagnostics API.

Provides lightweight endpoints for operational monitoring without exposing secrets.
"""

import logging
from datetime import datetime, timezone
from typing import Optional
import time

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import inspect

from backend.core.database import Database, get_database
from backend.core.logging import LOGGER_NAME, latency_bucket_ms, get_request_id
from backend.features.billing.service import billing_enabled

logger = logging.getLogger(LOGGER_NAME)

router = APIRouter(prefix="/api/health", tags=["health"])
root_router = APIRouter(tags=["health"])

REQUIRED_TABLES = ["users", "payments", "event_logs"]


class DBHealth(BaseModel):
    """Database health status."""
    connected: bool
    latency_ms: Optional[float] = None  # None when a fixed timestamp is requested
    tables_present: list[str] = []


class HealthResponse(BaseModel):
    """Health check response."""
    ok: bool
    billing_enabled: bool
    db: DBHealth
    computed_at: str  # UTC ISO format


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz(db: Database = Depends(get_database)):
    """Readiness check: DB connectivity + required tables."""
    if not db.check_connection():
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    inspector = inspect(db.engine)
    missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
    if missing:
        detail = f"missing tables: {', '.join(missing)}"
        logger.warning("[readyz] %s", detail)
        return JSONResponse(status_code=503, content={"status": "error", "detail": detail})
    return {"status": "ok"}


@router.get("", response_model=HealthResponse)
def health(now: Optional[str] = Query(None), db: Database = Depends(get_database)):
    """
    Check database connectivity and billing configuration.

    Args:
        now: Optional ISO timestamp for deterministic testing (overrides system time)
    """
    start = time.perf_counter()
    connected = db.check_connection()
    latency_ms = (time.perf_counter() - start) * 1000

    tables = []
    if connected:
        tables = [t for t in REQUIRED_TABLES if inspect(db.engine).has_table(t)]

    logger.info(
        "health.db",
        extra={
            "request_id": get_request_id(),
            "ok": connected,
            "latency_bucket": latency_bucket_ms(latency_ms if now is None else None),
        },
    )
    return HealthResponse(
        ok=connected,
        billing_enabled=billing_enabled(),
        db=DBHealth(
            connected=connected,
            latency_ms=None if now else latency_ms,
            tables_present=tables,
        ),
        computed_at=now or datetime.now(timezone.utc).isoformat(),
    )

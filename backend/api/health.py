"""
Health endpoints for the entitlement service.

Lightweight liveness plus a readiness check of the configured store.
"""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from backend.core.clock import Clock, get_clock
from backend.core.config import settings
from backend.core.database import check_connection, get_engine, metadata

logger = logging.getLogger("creatorhub")

root_router = APIRouter(tags=["health"])


@root_router.get("/healthz")
def healthz(clock: Clock = Depends(get_clock)):
    """Liveness check (no deps)."""
    return {
        "status": "ok",
        "store_backend": settings.resolved_store_backend(),
        "now": clock.now().isoformat(),
    }


@root_router.get("/readyz")
def readyz():
    """Readiness: for the SQL store, DB connectivity and required tables."""
    if settings.resolved_store_backend() != "sql":
        return {"status": "ok", "store_backend": "memory"}

    if not check_connection():
        logger.error("[readyz] database unreachable")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    inspector = inspect(get_engine())
    missing = [name for name in metadata.tables if not inspector.has_table(name)]
    if missing:
        detail = f"missing tables: {', '.join(sorted(missing))}"
        logger.warning(f"[readyz] {detail}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

    return {"status": "ok", "store_backend": "sql"}

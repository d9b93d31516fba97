"""
Liveness and readiness probes (unauthenticated, no secrets in responses).
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from flavr.core.database import missing_tables

logger = logging.getLogger("flavr")

root_router = APIRouter(tags=["health"])

REQUIRED_TABLES = ["entitlement_records", "pseudo_identities", "sync_job_runs"]


@root_router.get("/healthz")
def healthz():
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz():
    """503 until the database answers and the entitlement schema exists."""
    try:
        missing = missing_tables(REQUIRED_TABLES)
    except (SQLAlchemyError, ValueError) as e:
        logger.error("[readyz] database unreachable", extra={"error": str(e)})
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    if missing:
        detail = f"missing tables: {', '.join(missing)}"
        logger.warning(f"[readyz] {detail}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": detail})
    return {"status": "ok"}

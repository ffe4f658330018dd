"""Liveness and readiness probes, served at the application root."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from entitlement_api import __version__
from entitlement_api.dependencies import SessionDep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health() -> dict[str, Any]:
    """Liveness: the process is up and serving requests."""
    return {"status": "healthy", "version": __version__}


@router.get("/ready")
async def readiness_probe(session: SessionDep) -> JSONResponse:
    """Readiness: 200 when the database answers, 503 otherwise."""
    checks = {"db": "ok"}
    overall = "ready"
    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.error("Readiness: DB check failed: %s", exc)
        checks["db"] = "unavailable"
        overall = "not_ready"

    return JSONResponse(
        status_code=200 if overall == "ready" else 503,
        content={"status": overall, "version": __version__, "checks": checks},
    )

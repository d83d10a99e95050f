import logging
import time
from datetime import datetime, timezone

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from quota_app.db import check_database

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request) -> dict:
    started_at = getattr(request.app.state, "started_at", time.monotonic())
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": round(time.monotonic() - started_at, 1),
    }


@router.get("/ready")
async def ready(request: Request):
    checks = {"database": "ok", "encryption": "ok"}
    try:
        await check_database(request.app.state.db_session_maker)
    except SQLAlchemyError:
        logger.exception("Readiness check: database unavailable")
        checks["database"] = "error"

    if not request.app.state.vault.self_check():
        checks["encryption"] = "error"

    if any(value != "ok" for value in checks.values()):
        return JSONResponse(status_code=503, content={"status": "not_ready", "checks": checks})
    return {"status": "ready", "checks": checks}

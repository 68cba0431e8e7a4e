"""
Health checks: process liveness, plus readiness of the job store and file storage.
"""
import os
from pathlib import Path

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ingestion_engine.core.config import Settings, get_settings
from ingestion_engine.db.session import get_db

router = APIRouter(tags=["health"])


def _storage_status(settings: Settings) -> dict:
    problems = []
    for label, directory in (("uploads", settings.UPLOAD_DIR), ("exports", settings.EXPORT_DIR)):
        path = Path(directory)
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            problems.append(f"{label}: {e}")
            continue
        if not os.access(path, os.W_OK):
            problems.append(f"{label}: {path} is not writable")
    if problems:
        return {"status": "error", "message": "; ".join(problems)}
    return {"status": "ok"}


@router.get("/health")
async def health_check():
    """Liveness only."""
    return {"status": "ok"}


@router.get("/api/health")
def api_health_check(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """
    Readiness: the mapping/job store answers and upload/export directories are writable.

    Returns 503 with per-service details when either check fails.
    """
    services = {"storage": _storage_status(settings)}
    try:
        db.execute(text("SELECT 1"))
        services["database"] = {"status": "ok"}
    except SQLAlchemyError as e:
        services["database"] = {"status": "error", "message": str(e)}

    healthy = all(service["status"] == "ok" for service in services.values())
    body = {"status": "ok" if healthy else "unhealthy", "services": services}
    if not healthy:
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=body)
    return body

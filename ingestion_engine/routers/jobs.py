"""
Mapping-scoped job control: status, start/stop/pause/resume, config, logs and stats.
"""
from typing import Any, Dict, Optional
from uuid import UUID

from fastapi import APIRouter, Body, Depends, Query

from ingestion_engine.core.deps import get_job_manager, get_registry
from ingestion_engine.schemas.ingestion import (
    IngestionConfig,
    JobStartResponse,
    JobSummary,
    LogPage,
    MappingStatusResponse,
    StatsResponse,
)
from ingestion_engine.services.job_manager import IngestionJobManager
from ingestion_engine.services.mapping_registry import MappingRegistry

router = APIRouter(prefix="/ingestion", tags=["jobs"])


@router.get("/{mapping_id}/status", response_model=MappingStatusResponse)
def get_status(
    mapping_id: UUID,
    manager: IngestionJobManager = Depends(get_job_manager),
):
    """
    Latest job state and progress for a mapping, plus its recent jobs.

    ``state`` is ``IDLE`` when the mapping has never run.
    """
    return manager.get_status(mapping_id)


@router.post("/{mapping_id}/start", response_model=JobStartResponse)
def start_ingestion(
    mapping_id: UUID,
    overrides: Optional[Dict[str, Any]] = Body(default=None),
    manager: IngestionJobManager = Depends(get_job_manager),
):
    """
    Start a new job for a mapping.

    Fields in an optional body override the mapping's saved configuration
    for this job only. Fails with 409 while another job of the mapping is active.
    """
    job = manager.start_job(mapping_id, overrides)
    return JobStartResponse(job_id=job.id, state=job.state)


@router.post("/{mapping_id}/stop", response_model=JobSummary)
def stop_ingestion(
    mapping_id: UUID,
    manager: IngestionJobManager = Depends(get_job_manager),
):
    return manager.stop_job(mapping_id)


@router.post("/{mapping_id}/pause", response_model=JobSummary)
def pause_ingestion(
    mapping_id: UUID,
    manager: IngestionJobManager = Depends(get_job_manager),
):
    return manager.pause_job(mapping_id)


@router.post("/{mapping_id}/resume", response_model=JobSummary)
def resume_ingestion(
    mapping_id: UUID,
    manager: IngestionJobManager = Depends(get_job_manager),
):
    return manager.resume_job(mapping_id)


@router.get("/{mapping_id}/config", response_model=IngestionConfig)
def get_config(
    mapping_id: UUID,
    registry: MappingRegistry = Depends(get_registry),
):
    return registry.get_config(mapping_id)


@router.put("/{mapping_id}/config", response_model=IngestionConfig)
@router.post("/{mapping_id}/config", response_model=IngestionConfig)
def update_config(
    mapping_id: UUID,
    config: IngestionConfig,
    registry: MappingRegistry = Depends(get_registry),
):
    """Replace the mapping's ingestion configuration; applies to jobs started afterwards."""
    return registry.update_config(mapping_id, config)


@router.get("/{mapping_id}/logs", response_model=LogPage)
def get_logs(
    mapping_id: UUID,
    page: int = Query(0, ge=0),
    page_size: int = Query(50, gt=0, le=500, alias="pageSize"),
    level: Optional[str] = None,
    search: Optional[str] = None,
    manager: IngestionJobManager = Depends(get_job_manager),
):
    return manager.get_logs(mapping_id, page=page, page_size=page_size, level=level, search=search)


@router.get("/{mapping_id}/stats", response_model=StatsResponse)
def get_stats(
    mapping_id: UUID,
    time_range: str = Query("24h", alias="timeRange"),
    manager: IngestionJobManager = Depends(get_job_manager),
):
    return manager.get_stats(mapping_id, time_range)

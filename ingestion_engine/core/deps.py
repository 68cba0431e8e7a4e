"""
FastAPI dependencies shared by the routers.
"""
from fastapi import Depends, Request
from sqlalchemy.orm import Session

from ingestion_engine.core.config import Settings, get_settings
from ingestion_engine.db.session import get_db
from ingestion_engine.services.discovery import SchemaDiscoveryService
from ingestion_engine.services.job_manager import IngestionJobManager
from ingestion_engine.services.mapping_registry import MappingRegistry
from ingestion_engine.services.preview import PreviewService


def get_job_manager(request: Request) -> IngestionJobManager:
    """The process-wide job manager created at startup."""
    return request.app.state.job_manager


def get_discovery(settings: Settings = Depends(get_settings)) -> SchemaDiscoveryService:
    return SchemaDiscoveryService(settings)


def get_preview_service(
    settings: Settings = Depends(get_settings),
    discovery: SchemaDiscoveryService = Depends(get_discovery),
) -> PreviewService:
    return PreviewService(settings, discovery)


def get_registry(db: Session = Depends(get_db)) -> MappingRegistry:
    return MappingRegistry(db)

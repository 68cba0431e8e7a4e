"""
Ingestion router: discovery, preview, one-shot import/export and job progress.
"""
import json
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, UploadFile
from fastapi.responses import FileResponse, StreamingResponse

from ingestion_engine.core.config import Settings, get_settings
from ingestion_engine.core.deps import get_discovery, get_job_manager, get_preview_service, get_registry
from ingestion_engine.core.errors import InvalidRequest, InvalidStateTransition, SchemaNotFound
from ingestion_engine.schemas.connection import ConnectionConfig, SourceDescriptor, SourceKind
from ingestion_engine.schemas.discovery import (
    ColumnInfo,
    ConnectRequest,
    FileUploadResponse,
    SchemaResponse,
    TableInfo,
    TypeMappingTable,
)
from ingestion_engine.schemas.ingestion import IngestionConfig, JobState, ProgressResponse
from ingestion_engine.schemas.mapping import ColumnMappingIn, MappingCreate
from ingestion_engine.schemas.preview import (
    ExportRequest,
    ImportConfig,
    JobCreatedResponse,
    JoinPreviewRequest,
    JoinPreviewResponse,
    PreviewRequest,
    PreviewResponse,
    SortDirection,
)
from ingestion_engine.services.discovery import SchemaDiscoveryService
from ingestion_engine.services.flat_file import FlatFileReader, save_upload
from ingestion_engine.services.job_manager import IngestionJobManager
from ingestion_engine.services.mapping_registry import MappingRegistry
from ingestion_engine.services.preview import PageRequest, PreviewService
from ingestion_engine.services.type_mapping import type_mapping_table

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ingestion", tags=["ingestion"])


def _source_of(request: SourceDescriptor) -> SourceDescriptor:
    """Strip request-only fields, leaving the plain descriptor."""
    return SourceDescriptor(
        source_type=request.source_type,
        connection_config=request.connection_config,
        table=request.table,
        tables=request.tables,
        join_conditions=request.join_conditions,
    )


def _identity_mappings(columns: List[ColumnInfo], selected: List[str]) -> List[ColumnMappingIn]:
    by_name = {col.name: col for col in columns}
    names = selected or [col.name for col in columns]
    missing = [name for name in names if name not in by_name]
    if missing:
        raise SchemaNotFound(f"Unknown column(s): {', '.join(missing)}")
    return [
        ColumnMappingIn(
            source_column=name,
            target_column=name,
            target_type=by_name[name].type,
            source_type=by_name[name].type,
        )
        for name in names
    ]


def connection_from_query(
    host: str = "localhost",
    port: int = 8123,
    database: str = "default",
    user: str = "default",
    password: Optional[str] = None,
    secure: bool = False,
    url: Optional[str] = None,
) -> ConnectionConfig:
    return ConnectionConfig(
        source_kind=SourceKind.DATABASE,
        host=host,
        port=port,
        database=database,
        user=user,
        password=password,
        secure=secure,
        url=url,
    )


@router.post("/schema", response_model=SchemaResponse)
def get_schema(
    request: SourceDescriptor,
    discovery: SchemaDiscoveryService = Depends(get_discovery),
):
    """
    Discover the columns of a table, file or join set.

    Joins return the composed schema, with outer-join nullability applied.
    """
    return SchemaResponse(columns=discovery.compose(request).schema())


@router.post("/connect", response_model=List[TableInfo])
def connect(
    request: ConnectRequest,
    discovery: SchemaDiscoveryService = Depends(get_discovery),
):
    """Test a database connection and list its tables."""
    discovery.test_connection(request.connection_config)
    return [TableInfo(name=name) for name in discovery.list_tables(request.connection_config)]


@router.get("/tables/{table}/columns", response_model=List[str])
def get_table_columns(
    table: str,
    connection: ConnectionConfig = Depends(connection_from_query),
    discovery: SchemaDiscoveryService = Depends(get_discovery),
):
    return [col.name for col in discovery.discover_table(connection, table)]


@router.post("/file/columns", response_model=List[str])
def get_file_columns(
    file: UploadFile = File(...),
    delimiter: str = Form(","),
    has_header: bool = Form(True, alias="hasHeader"),
):
    """Column names of an uploaded file; the file itself is not kept."""
    suffix = Path(file.filename or "upload.csv").suffix
    with tempfile.NamedTemporaryFile(suffix=suffix, delete=False) as tmp:
        shutil.copyfileobj(file.file, tmp)
        tmp_path = Path(tmp.name)
    try:
        return FlatFileReader(tmp_path, delimiter=delimiter, has_header=has_header).headers()
    finally:
        os.unlink(tmp_path)


@router.post("/file/upload", response_model=FileUploadResponse)
def upload_file(
    file: UploadFile = File(...),
    delimiter: str = Form(","),
    has_header: bool = Form(True, alias="hasHeader"),
    settings: Settings = Depends(get_settings),
    discovery: SchemaDiscoveryService = Depends(get_discovery),
):
    """Store a file for later preview or import and return its reference with inferred columns."""
    file_ref = save_upload(file.filename, file.file, settings)
    connection = ConnectionConfig(
        source_kind=SourceKind.FLATFILE, file_ref=file_ref, delimiter=delimiter, has_header=has_header
    )
    logger.info("Stored upload %s as %s", file.filename, file_ref)
    return FileUploadResponse(file_ref=file_ref, columns=discovery.discover_file(connection, file_ref))


@router.post("/count", response_model=int)
def count_rows(
    request: PreviewRequest,
    preview: PreviewService = Depends(get_preview_service),
):
    return preview.count(_source_of(request), request.filters)


@router.post("/preview", response_model=PreviewResponse)
def preview_data(
    request: PreviewRequest,
    preview: PreviewService = Depends(get_preview_service),
):
    """
    One page of a source.

    Pages are zero-based; ``total`` is the size of the filtered set.
    """
    page = preview.page(
        _source_of(request),
        request.columns,
        PageRequest(
            page=request.page,
            page_size=request.page_size,
            filters=request.filters,
            sort_field=request.sort_field,
            descending=request.sort_direction == SortDirection.DESC,
        ),
    )
    return PreviewResponse(data=page.rows, total=page.total)


@router.post("/preview/export")
def export_preview(
    request: PreviewRequest,
    preview: PreviewService = Depends(get_preview_service),
):
    """Stream every row matching the preview filters as CSV."""
    delimiter = request.connection_config.delimiter if request.source_type == SourceKind.FLATFILE else ","
    chunks = preview.export_csv(
        _source_of(request),
        request.columns,
        request.filters,
        delimiter=delimiter,
        sort_field=request.sort_field,
        descending=request.sort_direction == SortDirection.DESC,
    )
    filename = f"{Path(request.table or 'preview').stem}_export.csv"
    return StreamingResponse(
        chunks,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/preview/join", response_model=JoinPreviewResponse)
def preview_join(
    request: JoinPreviewRequest,
    preview: PreviewService = Depends(get_preview_service),
):
    data, columns = preview.preview_join(_source_of(request), request.limit)
    return JoinPreviewResponse(data=data, columns=[col.name for col in columns])


@router.post("/export", response_model=JobCreatedResponse)
def start_export(
    request: ExportRequest,
    discovery: SchemaDiscoveryService = Depends(get_discovery),
    registry: MappingRegistry = Depends(get_registry),
    manager: IngestionJobManager = Depends(get_job_manager),
):
    """Export a table or join set to a CSV file as a background job."""
    source = _source_of(request)
    columns = discovery.compose(source).schema()
    output_name = request.output_name or f"{request.table or 'join'}_export.csv"
    target = SourceDescriptor(
        source_type=SourceKind.FLATFILE,
        connection_config=ConnectionConfig(
            source_kind=SourceKind.FLATFILE, delimiter=request.delimiter or ","
        ),
        table=output_name,
    )
    payload = MappingCreate(
        name=f"export {request.table or 'join'}",
        source=source,
        target=target,
        mappings=_identity_mappings(columns, request.selected_columns),
        config=request.ingestion_config or IngestionConfig(),
    )
    mapping_id = registry.create_adhoc(payload)
    job = manager.start_job(mapping_id)
    return JobCreatedResponse(job_id=job.id, mapping_id=mapping_id)


@router.post("/import", response_model=JobCreatedResponse)
def start_import(
    file: UploadFile = File(...),
    config: str = Form(...),
    settings: Settings = Depends(get_settings),
    discovery: SchemaDiscoveryService = Depends(get_discovery),
    registry: MappingRegistry = Depends(get_registry),
    manager: IngestionJobManager = Depends(get_job_manager),
):
    """Import an uploaded file into a database table as a background job."""
    try:
        import_config = ImportConfig.model_validate(json.loads(config))
    except ValueError as e:
        raise InvalidRequest(f"Invalid import config: {e}")

    file_ref = save_upload(file.filename, file.file, settings)
    file_connection = ConnectionConfig(
        source_kind=SourceKind.FLATFILE,
        file_ref=file_ref,
        delimiter=import_config.delimiter,
        has_header=import_config.has_header,
    )
    source = SourceDescriptor(source_type=SourceKind.FLATFILE, connection_config=file_connection, table=file_ref)
    mappings = import_config.column_mappings or _identity_mappings(
        discovery.discover_file(file_connection, file_ref), import_config.selected_columns
    )
    target = SourceDescriptor(
        source_type=SourceKind.DATABASE,
        connection_config=import_config.connection_config,
        table=import_config.table,
    )
    payload = MappingCreate(
        name=f"import {file.filename or file_ref}",
        source=source,
        target=target,
        mappings=mappings,
        config=import_config.ingestion_config or IngestionConfig(),
    )
    mapping_id = registry.create_adhoc(payload)
    job = manager.start_job(mapping_id)
    return JobCreatedResponse(job_id=job.id, mapping_id=mapping_id)


@router.get("/export/{job_id}/download")
def download_export(
    job_id: UUID,
    manager: IngestionJobManager = Depends(get_job_manager),
):
    """Download the file written by a completed export job."""
    job = manager.get_job(job_id)
    if job.state != JobState.COMPLETED:
        raise InvalidStateTransition(f"Job {job_id} is {job.state.value}; its output is not ready")
    output = manager.get_job_output(job_id)
    if not output or not Path(output).is_file():
        raise SchemaNotFound(f"Job {job_id} has no output file")
    path = Path(output)
    media_type = "application/gzip" if path.suffix == ".gz" else "text/csv"
    return FileResponse(path, media_type=media_type, filename=path.name)


@router.get("/progress/{job_id}", response_model=ProgressResponse)
def get_progress(
    job_id: UUID,
    manager: IngestionJobManager = Depends(get_job_manager),
):
    """Percentage and state of a job, polled by the import/export screen."""
    return manager.get_progress(job_id)


@router.get("/mappings", response_model=TypeMappingTable)
def get_type_mappings():
    """The native/logical type mapping table."""
    return TypeMappingTable(**type_mapping_table())

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging

from ingestion_engine.core.config import get_settings
from ingestion_engine.core.errors import IngestionError
from ingestion_engine.core.logging_setup import configure_logging
from ingestion_engine.db.base import Base
from ingestion_engine.db.session import SessionLocal, engine
from ingestion_engine.routers.health import router as health_router
from ingestion_engine.routers.ingestion import router as ingestion_router
from ingestion_engine.routers.jobs import router as jobs_router
from ingestion_engine.routers.mappings import router as mappings_router
from ingestion_engine.routers.metrics import router as metrics_router
from ingestion_engine.services.job_manager import IngestionJobManager
from ingestion_engine.services.sources import dispose_engines
import ingestion_engine.models  # noqa: F401  (registers tables on Base.metadata)

logger = logging.getLogger(__name__)
settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.LOG_LEVEL)
    if settings.AUTO_CREATE_SCHEMA:
        Base.metadata.create_all(bind=engine)
    manager = IngestionJobManager(SessionLocal, settings)
    manager.recover_interrupted_jobs()
    app.state.job_manager = manager
    logger.info("%s started with %d job workers", settings.APP_NAME, settings.JOB_WORKERS)
    yield
    manager.shutdown()
    dispose_engines()


app = FastAPI(
    title=settings.APP_NAME,
    description="Ingestion orchestration between ClickHouse and flat files - schema discovery, joins, previews and batched ingestion jobs.",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(IngestionError)
async def ingestion_error_handler(request: Request, exc: IngestionError):
    """Engine errors carry their own kind and HTTP status."""
    if exc.http_status >= 500:
        logger.warning(f"{exc.kind} on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.http_status,
        content={**exc.to_dict(), "request_id": request.headers.get("X-Request-ID")},
    )


# Global exception handler for unhandled errors
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unexpected server errors with structured response."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_server_error",
            "message": "An unexpected error occurred. Please try again later.",
            "request_id": request.headers.get("X-Request-ID"),
        }
    )

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mapping-scoped job routes match /ingestion/{mapping_id}/..., so the fixed
# ingestion routes are registered first.
app.include_router(health_router)
app.include_router(metrics_router)
app.include_router(ingestion_router, prefix="/api")
app.include_router(jobs_router, prefix="/api")
app.include_router(mappings_router, prefix="/api")


@app.get("/")
def read_root():
    return {
        "message": f"Welcome to {settings.APP_NAME}",
        "docs": "/docs",
        "health": "/health"
    }

"""
Telemetry Pipeline - FastAPI Backend

Main application entry point and configuration.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.sessions import files_router, router as sessions_router
from app.config import Settings
from app.services.ingestor import StreamingIngestor
from app.services.repository import TelemetryRepository
from app.services.sampler import MetricSampler
from app.services.storage import UploadStore


APP_NAME = "Telemetry Pipeline"
APP_VERSION = "0.1.0"

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level_value,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings: Settings = app.state.settings
    logger.info(f"Starting {APP_NAME} backend")
    logger.info(f"Data folder: {settings.data_folder.absolute()}")
    logger.info(f"Database: {settings.db_path}")

    yield

    logger.info(f"Shutting down {APP_NAME} backend")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the application and wire its services.

    Args:
        settings: Configuration; read from the environment when omitted.
    """
    settings = settings or Settings.from_env()
    configure_logging(settings)

    app = FastAPI(
        title=APP_NAME,
        description="""
        Backend API for motorsport data-logger telemetry.

        ## Features
        - Upload MoTeC-style CSV exports (plain, deflate or gzip)
        - Stream them into storage in bounded batches
        - Normalize channel names, units and categories
        - Serve downsampled metric series with full-data statistics

        ## Data Flow
        1. Create a session via POST /sessions
        2. Upload files via POST /sessions/{id}/files
        3. Poll GET /files/{id} until processed
        4. Query GET /sessions/{id}/metrics/{key}/samples
        """,
        version=APP_VERSION,
        lifespan=lifespan,
    )

    repository = TelemetryRepository(settings.db_path)
    app.state.settings = settings
    app.state.repository = repository
    app.state.upload_store = UploadStore(settings.uploads_folder, settings.upload_compression)
    app.state.ingestor = StreamingIngestor(repository, batch_size=settings.batch_size)
    app.state.sampler = MetricSampler(
        repository,
        sample_size=settings.sample_size,
        guard=repository.ensure_queryable,
    )

    # CORS middleware (allow all origins for development)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # In production, restrict this
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(sessions_router)
    app.include_router(files_router)

    @app.get("/")
    async def root():
        """Root endpoint - basic health check."""
        return {
            "name": APP_NAME,
            "version": APP_VERSION,
            "status": "running",
        }

    @app.get("/health")
    def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "data_folder": str(settings.data_folder),
            "session_count": len(repository.list_sessions()),
        }

    return app


app = create_app()

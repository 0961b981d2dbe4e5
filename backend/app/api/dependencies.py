"""
FastAPI dependencies.

The application wires its services onto `app.state` in create_app; routes
pull them from there.
"""

from fastapi import HTTPException, Request

from app.config import Settings
from app.errors import (
    MalformedFileError,
    NotFoundError,
    SessionNotReadyError,
    TelemetryError,
    UnknownMetricError,
    UnsupportedCompressionError,
)
from app.services.ingestor import StreamingIngestor
from app.services.repository import TelemetryRepository
from app.services.sampler import MetricSampler
from app.services.storage import UploadStore


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_repository(request: Request) -> TelemetryRepository:
    return request.app.state.repository


def get_upload_store(request: Request) -> UploadStore:
    return request.app.state.upload_store


def get_ingestor(request: Request) -> StreamingIngestor:
    return request.app.state.ingestor


def get_sampler(request: Request) -> MetricSampler:
    return request.app.state.sampler


def http_error(exc: TelemetryError) -> HTTPException:
    """Map a pipeline error onto the matching HTTP status."""
    if isinstance(exc, (NotFoundError, UnknownMetricError)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, SessionNotReadyError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, (MalformedFileError, UnsupportedCompressionError)):
        return HTTPException(status_code=400, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))

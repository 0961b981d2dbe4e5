"""
API routes for telemetry sessions, uploads and metric sampling.
"""

import logging
from typing import Optional

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    File,
    HTTPException,
    Query,
    Response,
    UploadFile,
)

from app.api.dependencies import (
    get_ingestor,
    get_repository,
    get_sampler,
    get_settings,
    get_upload_store,
    http_error,
)
from app.api.schemas import (
    ChannelResponse,
    ClearResponse,
    CreateSessionRequest,
    ErrorResponse,
    FileStatusResponse,
    MetricSamplesResponse,
    MultiSamplesResponse,
    SessionResponse,
    TimeRangeResponse,
)
from app.config import Settings
from app.errors import TelemetryError
from app.services.columnar import build_session_buffer
from app.services.ingestor import StreamingIngestor
from app.services.processing import run_ingestion_job
from app.services.repository import TelemetryRepository
from app.services.sampler import MAX_MA_WINDOW, MIN_MA_WINDOW, MIN_SAMPLE_SIZE, MetricSampler
from app.services.sink import TimeRange
from app.services.storage import UploadStore
from app.utils.zoom import TimeWindow, clamp_window


logger = logging.getLogger(__name__)

MAX_SAMPLE_SIZE = 100_000

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
}


router = APIRouter(prefix="/sessions", tags=["sessions"], responses=ERROR_RESPONSES)


def _resolve_time_range(
    sampler: MetricSampler,
    session_id: str,
    start: Optional[float],
    end: Optional[float],
) -> Optional[TimeRange]:
    """
    Turn optional start/end query parameters into a clamped time range.

    A missing bound defaults to the session's own bound; the result is kept
    inside the session's time span and no narrower than the minimum zoom.
    """
    if start is None and end is None:
        return None
    if start is not None and end is not None and start > end:
        raise HTTPException(status_code=400, detail=f"Invalid time range: start {start} > end {end}")

    bounds = sampler.time_bounds(session_id)
    if bounds is None:
        # no timed rows: every range selects nothing
        return None

    original = TimeWindow(*bounds)
    try:
        requested = TimeWindow(
            start if start is not None else original.min,
            end if end is not None else original.max,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return clamp_window(requested, original).as_tuple()


@router.get("", response_model=list[SessionResponse])
def list_sessions(repo: TelemetryRepository = Depends(get_repository)):
    """List all sessions, newest first."""
    return [SessionResponse.from_record(s) for s in repo.list_sessions()]


@router.post("", response_model=SessionResponse, status_code=201)
def create_session(
    request: CreateSessionRequest,
    repo: TelemetryRepository = Depends(get_repository),
):
    session = repo.create_session(request.name)
    return SessionResponse.from_record(session)


@router.get("/{session_id}", response_model=SessionResponse)
def get_session(session_id: str, repo: TelemetryRepository = Depends(get_repository)):
    try:
        return SessionResponse.from_record(repo.get_session(session_id))
    except TelemetryError as e:
        raise http_error(e)


@router.get("/{session_id}/metrics", response_model=list[ChannelResponse])
def get_session_metrics(
    session_id: str,
    category: Optional[str] = Query(None, description="Only metrics of this category"),
    repo: TelemetryRepository = Depends(get_repository),
):
    """
    Available metrics of a session, in column order of first appearance.

    Every declared channel except time is listed, including channels that
    carry no data.
    """
    try:
        session = repo.get_session(session_id)
    except TelemetryError as e:
        raise http_error(e)

    metrics = session.available_metrics
    if category is not None:
        metrics = [m for m in metrics if m.category.value.lower() == category.lower()]
    return [ChannelResponse.from_descriptor(m) for m in metrics]


@router.get("/{session_id}/files", response_model=list[FileStatusResponse])
def list_session_files(session_id: str, repo: TelemetryRepository = Depends(get_repository)):
    try:
        return [FileStatusResponse.from_record(f) for f in repo.list_files(session_id)]
    except TelemetryError as e:
        raise http_error(e)


@router.post("/{session_id}/files", response_model=FileStatusResponse, status_code=202)
def upload_file(
    session_id: str,
    background_tasks: BackgroundTasks,
    file: UploadFile = File(..., description="Telemetry CSV, plain or deflate/gzip compressed"),
    repo: TelemetryRepository = Depends(get_repository),
    store: UploadStore = Depends(get_upload_store),
    ingestor: StreamingIngestor = Depends(get_ingestor),
):
    """
    Upload a telemetry file and schedule its ingestion.

    The upload is stored compressed and processed in the background; poll
    GET /files/{id} for progress.
    """
    filename = file.filename or "upload.csv"
    try:
        repo.get_session(session_id)
        file_path = store.save(session_id, file.file, filename, file.content_type)
        record = repo.create_file(session_id, file_path, filename)
    except TelemetryError as e:
        raise http_error(e)

    background_tasks.add_task(run_ingestion_job, record.id, repo, store, ingestor)
    logger.info(f"Scheduled ingestion of {filename} as file {record.id}")
    return FileStatusResponse.from_record(record)


@router.post("/{session_id}/clear", response_model=ClearResponse)
def clear_session(session_id: str, repo: TelemetryRepository = Depends(get_repository)):
    """
    Delete all telemetry rows of a session and reset its available metrics.

    Files stay registered and can be re-ingested with POST /files/{id}/reprocess.
    """
    try:
        repo.get_session(session_id)
        repo.clear_telemetry(session_id)
    except TelemetryError as e:
        raise http_error(e)
    return ClearResponse(session_id=session_id, cleared=True)


@router.get("/{session_id}/metrics/{metric_key}/samples", response_model=MetricSamplesResponse)
def get_metric_samples(
    session_id: str,
    metric_key: str,
    sample_size: Optional[int] = Query(None, ge=MIN_SAMPLE_SIZE, le=MAX_SAMPLE_SIZE),
    start: Optional[float] = Query(None, description="Start time in seconds"),
    end: Optional[float] = Query(None, description="End time in seconds"),
    moving_average: Optional[int] = Query(None, ge=MIN_MA_WINDOW, le=MAX_MA_WINDOW),
    sampler: MetricSampler = Depends(get_sampler),
):
    """
    Downsampled series of one metric with statistics over all in-range rows.

    At most `sample_size` points are returned; the first and last in-range
    points are always included.
    """
    try:
        time_range = _resolve_time_range(sampler, session_id, start, end)
        series = sampler.sample_metric(
            session_id,
            metric_key,
            sample_size=sample_size,
            time_range=time_range,
            moving_average_window=moving_average,
        )
        bounds = sampler.time_bounds(session_id)
    except TelemetryError as e:
        raise http_error(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return MetricSamplesResponse.from_series(
        session_id,
        series,
        sample_size=sample_size or sampler.default_sample_size,
        bounds=bounds,
    )


@router.get("/{session_id}/samples", response_model=MultiSamplesResponse)
def get_multi_samples(
    session_id: str,
    metrics: list[str] = Query(..., min_length=1, description="Metric keys"),
    sample_size: Optional[int] = Query(None, ge=MIN_SAMPLE_SIZE, le=MAX_SAMPLE_SIZE),
    start: Optional[float] = Query(None, description="Start time in seconds"),
    end: Optional[float] = Query(None, description="End time in seconds"),
    sampler: MetricSampler = Depends(get_sampler),
):
    """Several metrics sampled independently and merged by exact time."""
    try:
        time_range = _resolve_time_range(sampler, session_id, start, end)
        rows = sampler.sample_metrics(
            session_id, metrics, sample_size=sample_size, time_range=time_range
        )
    except TelemetryError as e:
        raise http_error(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return MultiSamplesResponse(
        session_id=session_id,
        metrics=metrics,
        sample_size=sample_size or sampler.default_sample_size,
        rows=rows,
        time_range=TimeRangeResponse(start=time_range[0], end=time_range[1]) if time_range else None,
    )


@router.get("/{session_id}/columnar", response_class=Response)
def get_columnar_buffer(
    session_id: str,
    repo: TelemetryRepository = Depends(get_repository),
    settings: Settings = Depends(get_settings),
):
    """
    The session's numeric channels as one binary columnar buffer.

    Layout: uint32 LE metadata length, JSON metadata, then float64 LE columns.
    """
    try:
        repo.ensure_queryable(session_id, [])
        buffer = build_session_buffer(repo, session_id, settings.batch_size)
    except TelemetryError as e:
        raise http_error(e)
    return Response(content=buffer, media_type="application/octet-stream")


# ============================================================================
# File Routes
# ============================================================================

files_router = APIRouter(prefix="/files", tags=["files"], responses=ERROR_RESPONSES)


@files_router.get("/{file_id}", response_model=FileStatusResponse)
def get_file_status(file_id: str, repo: TelemetryRepository = Depends(get_repository)):
    """Processing status and progress of an uploaded file."""
    try:
        return FileStatusResponse.from_record(repo.get_file(file_id))
    except TelemetryError as e:
        raise http_error(e)


@files_router.post("/{file_id}/reprocess", response_model=FileStatusResponse, status_code=202)
def reprocess_file(
    file_id: str,
    background_tasks: BackgroundTasks,
    repo: TelemetryRepository = Depends(get_repository),
    store: UploadStore = Depends(get_upload_store),
    ingestor: StreamingIngestor = Depends(get_ingestor),
):
    """Schedule ingestion of an already stored file again, replacing its rows."""
    try:
        record = repo.get_file(file_id)
    except TelemetryError as e:
        raise http_error(e)

    background_tasks.add_task(run_ingestion_job, record.id, repo, store, ingestor)
    logger.info(f"Scheduled re-ingestion of file {record.id}")
    return FileStatusResponse.from_record(record)

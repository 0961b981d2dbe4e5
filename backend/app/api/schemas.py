"""
API schemas (Pydantic models) for request/response validation.
"""

from typing import Optional

from pydantic import BaseModel, Field

from app.models.telemetry import (
    ChannelDescriptor,
    FileRecord,
    MetricSeries,
    MetricStats,
    SessionRecord,
)


# ============================================================================
# Session Schemas
# ============================================================================

class CreateSessionRequest(BaseModel):
    """Request to create a session."""
    name: str = Field(min_length=1, max_length=200)


class ChannelResponse(BaseModel):
    """One available metric of a session."""
    key: str
    label: str
    unit: str
    category: str
    original_header: str = ""
    source_unit: str = ""
    value_type: str = "number"

    @classmethod
    def from_descriptor(cls, d: ChannelDescriptor) -> "ChannelResponse":
        return cls(
            key=d.key,
            label=d.label,
            unit=d.unit,
            category=d.category.value,
            original_header=d.original_header,
            source_unit=d.source_unit,
            value_type=d.value_type.value,
        )


class SessionResponse(BaseModel):
    """Session with its available metrics."""
    id: str
    name: str
    created_at: str
    available_metrics: list[ChannelResponse]

    @classmethod
    def from_record(cls, session: SessionRecord) -> "SessionResponse":
        return cls(
            id=session.id,
            name=session.name,
            created_at=session.created_at.isoformat(),
            available_metrics=[ChannelResponse.from_descriptor(d) for d in session.available_metrics],
        )


# ============================================================================
# File Schemas
# ============================================================================

class FileStatusResponse(BaseModel):
    """Uploaded file and its processing status."""
    id: str
    session_id: str
    original_name: str
    file_path: str
    status: str
    progress: int
    row_count: int
    error: Optional[str] = None
    metadata: dict[str, str] = {}
    created_at: str

    @classmethod
    def from_record(cls, record: FileRecord) -> "FileStatusResponse":
        return cls(
            id=record.id,
            session_id=record.session_id,
            original_name=record.original_name,
            file_path=record.file_path,
            status=record.status.value,
            progress=record.progress,
            row_count=record.row_count,
            error=record.error,
            metadata=record.metadata,
            created_at=record.created_at.isoformat(),
        )


class ClearResponse(BaseModel):
    """Result of clearing a session's telemetry."""
    session_id: str
    cleared: bool


# ============================================================================
# Sample Schemas
# ============================================================================

class PointResponse(BaseModel):
    """One point of a sampled series."""
    time: float
    value: float
    movingAverage: Optional[float] = None


class StatsResponse(BaseModel):
    """Statistics over every in-range value, not just the sample."""
    count: int
    min: Optional[float] = None
    max: Optional[float] = None
    avg: Optional[float] = None

    @classmethod
    def from_stats(cls, stats: MetricStats) -> "StatsResponse":
        return cls(count=stats.count, min=stats.min, max=stats.max, avg=stats.avg)


class TimeRangeResponse(BaseModel):
    start: float
    end: float


class MetricSamplesResponse(BaseModel):
    """Downsampled series for one metric."""
    session_id: str
    metric: str
    sample_size: int
    total_points: int
    points: list[PointResponse]
    stats: StatsResponse
    time_range: Optional[TimeRangeResponse] = None
    bounds: Optional[TimeRangeResponse] = None  # full session time span

    @classmethod
    def from_series(
        cls,
        session_id: str,
        series: MetricSeries,
        sample_size: int,
        bounds: Optional[tuple[float, float]] = None,
    ) -> "MetricSamplesResponse":
        return cls(
            session_id=session_id,
            metric=series.metric_key,
            sample_size=sample_size,
            total_points=series.total_points,
            points=[PointResponse(**p.to_dict()) for p in series.points],
            stats=StatsResponse.from_stats(series.stats),
            time_range=(
                TimeRangeResponse(start=series.time_range[0], end=series.time_range[1])
                if series.time_range else None
            ),
            bounds=TimeRangeResponse(start=bounds[0], end=bounds[1]) if bounds else None,
        )


class MultiSamplesResponse(BaseModel):
    """Several metrics merged into one record per distinct time."""
    session_id: str
    metrics: list[str]
    sample_size: int
    rows: list[dict[str, float]]
    time_range: Optional[TimeRangeResponse] = None


# ============================================================================
# Error Schemas
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response."""
    detail: str
    code: Optional[str] = None

"""
Persistence and query interfaces.

The ingestor only talks to a PersistenceSink; the sampler only talks to a
MetricSource. The SQLite repository implements both, the columnar store
implements MetricSource.
"""

from typing import Optional, Protocol

from app.models.telemetry import (
    ChannelDescriptor,
    FileStatus,
    IngestionBatch,
    MetricStats,
    SampledPoint,
)


TimeRange = tuple[float, float]


class PersistenceSink(Protocol):
    """Storage collaborator of the streaming ingestor. Failures raise SinkError."""

    def insert_rows(self, batch: IngestionBatch) -> None:
        ...

    def update_file_status(
        self,
        file_id: str,
        status: FileStatus,
        progress_percent: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        ...

    def update_session_metrics(self, session_id: str, metrics: list[ChannelDescriptor]) -> None:
        ...

    def clear_telemetry(self, session_id: str) -> None:
        ...


class MetricSource(Protocol):
    """Read side used by the metric sampler."""

    def query_metric(
        self,
        session_id: str,
        metric_key: str,
        sample_size: int,
        time_range: Optional[TimeRange] = None,
    ) -> list[SampledPoint]:
        ...

    def query_metric_stats(
        self,
        session_id: str,
        metric_key: str,
        time_range: Optional[TimeRange] = None,
    ) -> MetricStats:
        ...

    def query_multiple_metrics(
        self,
        session_id: str,
        metric_keys: list[str],
        sample_size: int,
        time_range: Optional[TimeRange] = None,
    ) -> dict[str, list[SampledPoint]]:
        ...

    def time_bounds(self, session_id: str) -> Optional[TimeRange]:
        ...

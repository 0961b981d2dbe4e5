"""
Canonical telemetry data model (v1).

All ingested telemetry is normalized into this structure with:
- stable, sanitized channel keys
- one unit per channel (speeds in km/h)
- a semantic category per channel
- rows as a flat ordered mapping of channel key -> value
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union


DEFAULT_BATCH_SIZE = 500
DEFAULT_SAMPLE_SIZE = 2000

ChannelValue = Union[float, str]


class ChannelCategory(Enum):
    """Fixed set of channel categories shown in metric pickers."""

    PERFORMANCE = "Performance"
    ENGINE = "Engine"
    DRIVER_INPUT = "Driver Input"
    FORCES = "Forces"
    FUEL = "Fuel"
    TRANSMISSION = "Transmission"
    ELECTRICAL = "Electrical"
    GPS = "GPS"
    LAP_DATA = "Lap Data"
    SUSPENSION = "Suspension"
    TIRES = "Tires"
    TIMING = "Timing"
    OTHER = "Other"


class ValueType(Enum):
    """Storage type of a channel's values."""

    NUMBER = "number"
    TEXT = "text"


class FileStatus(Enum):
    """Processing status of an uploaded file."""

    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


class IngestState(Enum):
    """States of the streaming ingestor."""

    AWAITING_HEADER = "awaiting_header"
    AWAITING_UNITS = "awaiting_units"
    SKIPPING_PREAMBLE = "skipping_preamble"
    READING_DATA = "reading_data"
    FLUSHING = "flushing"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class ChannelDescriptor:
    """Normalized, semantic view of a raw CSV column."""

    key: str
    label: str
    unit: str
    category: ChannelCategory
    column_index: int = -1
    original_header: str = ""
    value_type: ValueType = ValueType.NUMBER
    source_unit: str = ""  # unit as declared in the file, before normalization
    scale: float = 1.0  # applied once at ingestion (e.g. m/s -> km/h)

    @property
    def is_text(self) -> bool:
        return self.value_type is ValueType.TEXT

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "label": self.label,
            "unit": self.unit,
            "category": self.category.value,
            "column_index": self.column_index,
            "original_header": self.original_header,
            "value_type": self.value_type.value,
            "source_unit": self.source_unit,
            "scale": self.scale,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChannelDescriptor":
        return cls(
            key=data["key"],
            label=data.get("label", data["key"]),
            unit=data.get("unit", ""),
            category=ChannelCategory(data.get("category", ChannelCategory.OTHER.value)),
            column_index=int(data.get("column_index", -1)),
            original_header=data.get("original_header", ""),
            value_type=ValueType(data.get("value_type", ValueType.NUMBER.value)),
            source_unit=data.get("source_unit", ""),
            scale=float(data.get("scale", 1.0)),
        )


@dataclass
class TelemetryRow:
    """
    One data record.

    `values` holds every channel of the row keyed by ChannelDescriptor.key,
    in column order. `time` is None when the time cell was missing or not
    numeric; such rows are stored and filtered out at query time.
    """

    session_id: str
    file_id: str
    row_index: int
    time: Optional[float]
    values: dict[str, ChannelValue] = field(default_factory=dict)


@dataclass
class IngestionBatch:
    """Ordered rows of a single file, bounded to a maximum size."""

    file_id: str
    session_id: str
    max_size: int = DEFAULT_BATCH_SIZE
    rows: list[TelemetryRow] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.rows)

    def __iter__(self):
        return iter(self.rows)

    @property
    def is_full(self) -> bool:
        return len(self.rows) >= self.max_size

    def append(self, row: TelemetryRow) -> None:
        if self.is_full:
            raise OverflowError(f"Batch already holds {self.max_size} rows")
        self.rows.append(row)


@dataclass(frozen=True)
class SampledPoint:
    """One element of a downsampled series."""

    time: float
    value: float
    moving_average: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"time": self.time, "value": self.value}
        if self.moving_average is not None:
            result["movingAverage"] = self.moving_average
        return result


@dataclass(frozen=True)
class MetricStats:
    """Summary statistics over the full candidate set of a metric."""

    count: int
    min: Optional[float] = None
    max: Optional[float] = None
    avg: Optional[float] = None


@dataclass
class MetricSeries:
    """Sampled series for one metric plus its full-data statistics."""

    metric_key: str
    points: list[SampledPoint]
    stats: MetricStats
    time_range: Optional[tuple[float, float]] = None

    @property
    def total_points(self) -> int:
        return self.stats.count


@dataclass
class IngestionResult:
    """Outcome of one ingestion run."""

    file_id: str
    session_id: str
    state: IngestState
    rows_processed: int = 0
    batches_flushed: int = 0
    parse_warnings: int = 0
    max_buffered_rows: int = 0
    channels: list[ChannelDescriptor] = field(default_factory=list)
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class SessionRecord:
    """A session groups uploaded files and their available metrics."""

    id: str
    name: str
    created_at: datetime
    available_metrics: list[ChannelDescriptor] = field(default_factory=list)


@dataclass
class FileRecord:
    """An uploaded file and its processing status."""

    id: str
    session_id: str
    file_path: str
    original_name: str
    status: FileStatus
    created_at: datetime
    progress: int = 0
    row_count: int = 0
    error: Optional[str] = None
    metadata: dict[str, str] = field(default_factory=dict)

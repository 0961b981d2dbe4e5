"""
Columnar telemetry buffer.

Compact binary layout for shipping a whole session's numeric channels to a
client in one request:

    uint32 LE     metadata length in bytes
    JSON (UTF-8)  {"rowCount", "columnCount", "headers", "units"}
    float64 LE    rowCount values per column, columns in header order

Missing values are NaN. Text channels are not stored. The first column is
always the time channel.
"""

import json
import logging
import struct
from typing import Iterable, Optional

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from app.errors import MalformedFileError, NotFoundError, UnknownMetricError
from app.models.telemetry import (
    DEFAULT_BATCH_SIZE,
    ChannelDescriptor,
    MetricStats,
    SampledPoint,
    TelemetryRow,
)
from app.services.canonicalizer import TIME_KEY
from app.services.repository import TelemetryRepository
from app.services.sampler import compute_stats, sample_arrays
from app.services.sink import TimeRange


logger = logging.getLogger(__name__)


LENGTH_PREFIX = struct.Struct("<I")
VALUE_DTYPE = np.dtype("<f8")


class ColumnarWriter:
    """
    Accumulates rows batch by batch and serializes them column-wise.

    Each batch is turned into one float64 block via a pandas frame; cells
    that are absent or not numeric become NaN.
    """

    def __init__(self, channels: Iterable[ChannelDescriptor], time_unit: str = "s"):
        numeric = [c for c in channels if not c.is_text and c.key != TIME_KEY]
        self._headers = [TIME_KEY] + [c.key for c in numeric]
        self._units = [time_unit] + [c.unit for c in numeric]
        self._blocks: list[NDArray[np.float64]] = []
        self._row_count = 0

    @property
    def headers(self) -> list[str]:
        return list(self._headers)

    @property
    def row_count(self) -> int:
        return self._row_count

    def write_batch(self, rows: Iterable[TelemetryRow]) -> int:
        """Append a batch of rows. Returns the number of rows written."""
        records = [{TIME_KEY: row.time, **row.values} for row in rows]
        if not records:
            return 0
        frame = pd.DataFrame.from_records(records, columns=self._headers)
        frame = frame.apply(pd.to_numeric, errors="coerce")
        self._blocks.append(frame.to_numpy(dtype=np.float64, na_value=np.nan))
        self._row_count += len(records)
        return len(records)

    def to_bytes(self) -> bytes:
        if self._blocks:
            matrix = np.vstack(self._blocks)
        else:
            matrix = np.zeros((0, len(self._headers)), dtype=np.float64)

        metadata = json.dumps({
            "rowCount": int(matrix.shape[0]),
            "columnCount": len(self._headers),
            "headers": self._headers,
            "units": self._units,
        }).encode("utf-8")

        parts = [LENGTH_PREFIX.pack(len(metadata)), metadata]
        for j in range(matrix.shape[1]):
            parts.append(np.ascontiguousarray(matrix[:, j], dtype=VALUE_DTYPE).tobytes())
        return b"".join(parts)


class ColumnarStore:
    """
    Read side of the columnar buffer; a MetricSource over one session.

    Rows are kept in buffer order and sorted by time (stable) per query, so
    ties keep their original row order.
    """

    def __init__(
        self,
        headers: list[str],
        units: list[str],
        columns: dict[str, NDArray[np.float64]],
        session_id: Optional[str] = None,
    ):
        if TIME_KEY not in columns:
            raise MalformedFileError(f"Columnar buffer has no '{TIME_KEY}' column")
        self.headers = headers
        self.units = units
        self.session_id = session_id
        self._columns = columns

    @classmethod
    def from_bytes(cls, buffer: bytes, session_id: Optional[str] = None) -> "ColumnarStore":
        if len(buffer) < LENGTH_PREFIX.size:
            raise MalformedFileError("Columnar buffer is too short")
        (meta_len,) = LENGTH_PREFIX.unpack_from(buffer, 0)
        offset = LENGTH_PREFIX.size + meta_len
        try:
            meta = json.loads(buffer[LENGTH_PREFIX.size:offset].decode("utf-8"))
            row_count = int(meta["rowCount"])
            headers = list(meta["headers"])
            units = list(meta.get("units", [""] * len(headers)))
        except (UnicodeDecodeError, ValueError, KeyError) as exc:
            raise MalformedFileError(f"Invalid columnar metadata: {exc}") from exc

        expected = offset + row_count * len(headers) * VALUE_DTYPE.itemsize
        if len(buffer) < expected:
            raise MalformedFileError(
                f"Columnar buffer truncated: {len(buffer)} bytes, expected {expected}"
            )

        columns = {}
        for j, header in enumerate(headers):
            start = offset + j * row_count * VALUE_DTYPE.itemsize
            columns[header] = np.frombuffer(
                buffer, dtype=VALUE_DTYPE, count=row_count, offset=start
            ).astype(np.float64)
        logger.debug(f"Loaded columnar buffer: {row_count} rows x {len(headers)} columns")
        return cls(headers, units, columns, session_id)

    @property
    def row_count(self) -> int:
        return len(self._columns[TIME_KEY])

    def column(self, key: str) -> NDArray[np.float64]:
        if key not in self._columns:
            raise UnknownMetricError(f"Unknown metric: {key}")
        return self._columns[key]

    def _check_session(self, session_id: str) -> None:
        if self.session_id is not None and session_id != self.session_id:
            raise NotFoundError(f"Session not found: {session_id}")

    def _candidates(
        self,
        metric_key: str,
        time_range: Optional[TimeRange],
    ) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
        times = self._columns[TIME_KEY]
        values = self.column(metric_key)
        mask = ~np.isnan(times) & ~np.isnan(values)
        if time_range is not None:
            mask &= (times >= time_range[0]) & (times <= time_range[1])
        t, v = times[mask], values[mask]
        order = np.argsort(t, kind="stable")
        return t[order], v[order]

    def query_metric(
        self,
        session_id: str,
        metric_key: str,
        sample_size: int,
        time_range: Optional[TimeRange] = None,
    ) -> list[SampledPoint]:
        self._check_session(session_id)
        times, values = self._candidates(metric_key, time_range)
        return sample_arrays(times, values, sample_size)

    def query_metric_stats(
        self,
        session_id: str,
        metric_key: str,
        time_range: Optional[TimeRange] = None,
    ) -> MetricStats:
        self._check_session(session_id)
        _, values = self._candidates(metric_key, time_range)
        return compute_stats(values)

    def query_multiple_metrics(
        self,
        session_id: str,
        metric_keys: list[str],
        sample_size: int,
        time_range: Optional[TimeRange] = None,
    ) -> dict[str, list[SampledPoint]]:
        return {
            key: self.query_metric(session_id, key, sample_size, time_range)
            for key in metric_keys
        }

    def time_bounds(self, session_id: str) -> Optional[TimeRange]:
        self._check_session(session_id)
        times = self._columns[TIME_KEY]
        times = times[~np.isnan(times)]
        if times.size == 0:
            return None
        return (float(times.min()), float(times.max()))


def build_session_buffer(
    repository: TelemetryRepository,
    session_id: str,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> bytes:
    """Serialize a session's persisted rows into a columnar buffer, batch by batch."""
    session = repository.get_session(session_id)
    writer = ColumnarWriter(session.available_metrics)
    for rows in repository.iter_rows(session_id, batch_size):
        writer.write_batch(rows)
    logger.info(f"Built columnar buffer for session {session_id}: {writer.row_count} rows")
    return writer.to_bytes()

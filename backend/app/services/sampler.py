"""
Metric sampler.

Turns an arbitrarily long metric series into a bounded number of points for
charting using fixed-stride decimation:

- n <= sample_size: every point is returned
- otherwise every `stride`-th point is returned, with
  stride = ceil((n - 1) / (sample_size - 1)), plus the last point

The first and last in-range points are always kept. Short spikes between
emitted points can be lost; summary statistics are therefore computed over
the full candidate set, never over the sample.
"""

import logging
import math
from typing import Callable, Iterable, Optional, Sequence

import numpy as np
from numpy.typing import NDArray

from app.models.telemetry import (
    DEFAULT_SAMPLE_SIZE,
    MetricSeries,
    MetricStats,
    SampledPoint,
)
from app.services.sink import MetricSource, TimeRange


logger = logging.getLogger(__name__)


MIN_SAMPLE_SIZE = 2
DEFAULT_MA_WINDOW = 10
MIN_MA_WINDOW = 2
MAX_MA_WINDOW = 100

QueryGuard = Callable[[str, list[str]], None]


def validate_sample_size(sample_size: int) -> int:
    if sample_size < MIN_SAMPLE_SIZE:
        raise ValueError(f"sample_size must be >= {MIN_SAMPLE_SIZE}, got {sample_size}")
    return sample_size


def validate_time_range(time_range: Optional[TimeRange]) -> Optional[TimeRange]:
    if time_range is None:
        return None
    start, end = float(time_range[0]), float(time_range[1])
    if math.isnan(start) or math.isnan(end) or start > end:
        raise ValueError(f"Invalid time range: {time_range}")
    return (start, end)


def sampling_stride(n: int, sample_size: int) -> int:
    """Stride for fixed-stride decimation of n candidates."""
    validate_sample_size(sample_size)
    if n <= sample_size:
        return 1
    return math.ceil((n - 1) / (sample_size - 1))


def decimate(n: int, sample_size: int) -> NDArray[np.int64]:
    """
    Indices to keep out of n time-ordered candidates.

    Always includes 0 and n - 1; never more than sample_size indices.
    """
    stride = sampling_stride(n, sample_size)
    if n == 0:
        return np.zeros(0, dtype=np.int64)
    idx = np.arange(0, n, stride, dtype=np.int64)
    if idx[-1] != n - 1:
        idx = np.append(idx, np.int64(n - 1))
    return idx


def sample_arrays(
    times: NDArray[np.float64],
    values: NDArray[np.float64],
    sample_size: int,
) -> list[SampledPoint]:
    """Decimate aligned, time-ordered arrays into SampledPoints."""
    idx = decimate(len(times), sample_size)
    return [SampledPoint(time=float(times[i]), value=float(values[i])) for i in idx]


def compute_stats(values: Iterable[float]) -> MetricStats:
    """min/max/avg over all values (NaN ignored)."""
    arr = np.asarray(list(values) if not isinstance(values, np.ndarray) else values, dtype=np.float64)
    arr = arr[~np.isnan(arr)]
    if arr.size == 0:
        return MetricStats(count=0)
    return MetricStats(
        count=int(arr.size),
        min=float(np.min(arr)),
        max=float(np.max(arr)),
        avg=float(np.mean(arr)),
    )


def moving_average(values: Sequence[float], window: int = DEFAULT_MA_WINDOW) -> NDArray[np.float64]:
    """
    Symmetric windowed mean over an already-sampled series.

    For point i the mean covers indices
    [max(0, i - floor(W/2)), min(n, i + ceil(W/2))).
    """
    if not MIN_MA_WINDOW <= window <= MAX_MA_WINDOW:
        raise ValueError(
            f"Moving average window must be between {MIN_MA_WINDOW} and {MAX_MA_WINDOW}, got {window}"
        )
    arr = np.asarray(values, dtype=np.float64)
    n = len(arr)
    if n == 0:
        return arr

    i = np.arange(n)
    lo = np.maximum(0, i - window // 2)
    hi = np.minimum(n, i + math.ceil(window / 2))
    csum = np.concatenate(([0.0], np.cumsum(arr)))
    return (csum[hi] - csum[lo]) / (hi - lo)


def with_moving_average(points: list[SampledPoint], window: int) -> list[SampledPoint]:
    averages = moving_average([p.value for p in points], window)
    return [
        SampledPoint(time=p.time, value=p.value, moving_average=float(avg))
        for p, avg in zip(points, averages)
    ]


def merge_series(series: dict[str, list[SampledPoint]]) -> list[dict[str, float]]:
    """
    Align several sampled series into one record per distinct time value.

    Rows are matched on exact time equality; a metric without a value at a
    given time is absent from that record.
    """
    merged: dict[float, dict[str, float]] = {}
    for key, points in series.items():
        for p in points:
            merged.setdefault(p.time, {"time": p.time})[key] = p.value
    return [merged[t] for t in sorted(merged)]


class MetricSampler:
    """
    Query facade over a MetricSource.

    Works the same whether the source samples persisted rows or reads a
    pre-built columnar buffer. `guard` is called with the session id and the
    requested keys before any query and raises to refuse it (session not
    ready, unknown metric).
    """

    def __init__(
        self,
        source: MetricSource,
        sample_size: int = DEFAULT_SAMPLE_SIZE,
        guard: Optional[QueryGuard] = None,
    ):
        self._source = source
        self._sample_size = validate_sample_size(sample_size)
        self._guard = guard

    @property
    def default_sample_size(self) -> int:
        return self._sample_size

    def sample_metric(
        self,
        session_id: str,
        metric_key: str,
        sample_size: Optional[int] = None,
        time_range: Optional[TimeRange] = None,
        moving_average_window: Optional[int] = None,
    ) -> MetricSeries:
        """
        Sample one metric and compute its full-data statistics.

        Args:
            session_id: Session to query
            metric_key: Channel key
            sample_size: Maximum number of points (defaults to the sampler's)
            time_range: Optional inclusive [min, max] window
            moving_average_window: If set, attach a moving average to each point

        Returns:
            MetricSeries with at most sample_size points
        """
        sample_size = validate_sample_size(self._sample_size if sample_size is None else sample_size)
        time_range = validate_time_range(time_range)
        self._check(session_id, [metric_key])

        points = self._source.query_metric(session_id, metric_key, sample_size, time_range)
        stats = self._source.query_metric_stats(session_id, metric_key, time_range)
        if moving_average_window is not None:
            points = with_moving_average(points, moving_average_window)

        logger.debug(
            f"Sampled {metric_key} for session {session_id}: "
            f"{len(points)}/{stats.count} points"
        )
        return MetricSeries(
            metric_key=metric_key,
            points=points,
            stats=stats,
            time_range=time_range,
        )

    def sample_metrics(
        self,
        session_id: str,
        metric_keys: list[str],
        sample_size: Optional[int] = None,
        time_range: Optional[TimeRange] = None,
    ) -> list[dict[str, float]]:
        """Sample several metrics and merge them by exact time."""
        sample_size = validate_sample_size(self._sample_size if sample_size is None else sample_size)
        time_range = validate_time_range(time_range)
        self._check(session_id, metric_keys)
        series = self._source.query_multiple_metrics(
            session_id, metric_keys, sample_size, time_range
        )
        return merge_series(series)

    def metric_stats(
        self,
        session_id: str,
        metric_keys: list[str],
        time_range: Optional[TimeRange] = None,
    ) -> dict[str, MetricStats]:
        time_range = validate_time_range(time_range)
        self._check(session_id, metric_keys)
        return {
            key: self._source.query_metric_stats(session_id, key, time_range)
            for key in metric_keys
        }

    def time_bounds(self, session_id: str) -> Optional[TimeRange]:
        return self._source.time_bounds(session_id)

    def _check(self, session_id: str, metric_keys: list[str]) -> None:
        if self._guard is not None:
            self._guard(session_id, metric_keys)

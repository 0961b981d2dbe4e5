"""
Time-window zoom and pan for chart views.

All windows are kept inside the original (full session) bounds and never
narrower than a fixed fraction of the original span.
"""

import math
from dataclasses import dataclass


DEFAULT_MIN_SPAN_FRACTION = 0.05


@dataclass(frozen=True)
class TimeWindow:
    """Closed time interval [min, max] in seconds."""

    min: float
    max: float

    def __post_init__(self):
        if self.max < self.min:
            raise ValueError(f"Invalid time window: [{self.min}, {self.max}]")

    @property
    def span(self) -> float:
        return self.max - self.min

    def contains(self, t: float) -> bool:
        return self.min <= t <= self.max

    def as_tuple(self) -> tuple[float, float]:
        return (self.min, self.max)


def _clamp_span(span: float, original: TimeWindow, min_span_fraction: float) -> float:
    return max(original.span * min_span_fraction, min(original.span, span))


def _fit(lo: float, span: float, original: TimeWindow) -> TimeWindow:
    """Shift [lo, lo + span] into the original bounds, keeping its span."""
    hi = lo + span
    if lo < original.min:
        lo, hi = original.min, original.min + span
    if hi > original.max:
        lo, hi = original.max - span, original.max
    return TimeWindow(lo, hi)


def zoom_window(
    current: TimeWindow,
    original: TimeWindow,
    center: float,
    zoom_delta: float,
    min_span_fraction: float = DEFAULT_MIN_SPAN_FRACTION,
) -> TimeWindow:
    """
    Zoom the current window around a point.

    The new span is current.span * e^(-zoom_delta), clamped to
    [original.span * min_span_fraction, original.span]. The point `center`
    stays at the same relative position within the window.

    Args:
        current: Window currently shown
        original: Full bounds of the data
        center: Time under the cursor
        zoom_delta: Positive zooms in, negative zooms out

    Returns:
        New window inside the original bounds
    """
    span = _clamp_span(current.span * math.exp(-zoom_delta), original, min_span_fraction)
    anchor = (center - current.min) / current.span if current.span > 0 else 0.5
    return _fit(center - span * anchor, span, original)


def clamp_window(
    requested: TimeWindow,
    original: TimeWindow,
    min_span_fraction: float = DEFAULT_MIN_SPAN_FRACTION,
) -> TimeWindow:
    """
    Clamp an explicitly requested window.

    The span is limited the same way as in zoom_window; the window keeps its
    midpoint and is then shifted into the original bounds.
    """
    span = _clamp_span(requested.span, original, min_span_fraction)
    if span == requested.span:
        return _fit(requested.min, span, original)
    midpoint = (requested.min + requested.max) / 2
    return _fit(midpoint - span / 2, span, original)


def pan_window(current: TimeWindow, original: TimeWindow, offset: float) -> TimeWindow:
    """Shift a window by `offset` seconds, stopping at the original bounds."""
    span = min(current.span, original.span)
    return _fit(current.min + offset, span, original)

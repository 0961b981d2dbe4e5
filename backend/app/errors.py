"""
Error taxonomy for telemetry ingestion and querying.
"""


class TelemetryError(Exception):
    """Base class for all telemetry pipeline errors."""


class MalformedFileError(TelemetryError):
    """File does not match the expected multi-section telemetry layout."""


class UnsupportedCompressionError(TelemetryError):
    """Compression hint is not one of none, deflate or gzip."""


class SinkError(TelemetryError):
    """Wraps a failure of the persistence layer."""


class NotFoundError(TelemetryError):
    """Requested session or file does not exist."""


class UnknownMetricError(TelemetryError):
    """Requested metric key is not part of the session's available metrics."""


class SessionNotReadyError(TelemetryError):
    """Session has files that are still processing or have failed."""

"""
Streaming telemetry ingestor.

Consumes a byte-chunk stream of a telemetry CSV and persists it in bounded
batches through a PersistenceSink:

    AwaitingHeader -> AwaitingUnits -> SkippingPreamble -> ReadingData
        -> Flushing -> Done          (Failed from any state)

At most one partial line and one batch of rows are held in memory at a time.
Each full batch is written synchronously before more input is read, so a
slow sink slows the reader down instead of growing the buffer.
"""

import logging
import math
from typing import Callable, Iterable, Optional

from app.errors import MalformedFileError
from app.models.raw import FileHeader
from app.models.telemetry import (
    DEFAULT_BATCH_SIZE,
    ChannelDescriptor,
    FileStatus,
    IngestionBatch,
    IngestionResult,
    IngestState,
    TelemetryRow,
)
from app.services.canonicalizer import (
    TIME_KEY,
    available_metrics,
    convert_value,
    normalize_columns,
)
from app.services.csv_parser import (
    DEFAULT_LAYOUT,
    FormatLayout,
    LineBuffer,
    parse_header,
    parse_metadata,
    parse_units,
    split_fields,
)
from app.services.sink import PersistenceSink


logger = logging.getLogger(__name__)


MAX_STREAMING_PROGRESS = 95
PROGRESS_SCALE = 23

ProgressCallback = Callable[[int], None]


def progress_for_rows(rows: int) -> int:
    """Logarithmic progress estimate; total row count is unknown while streaming."""
    return min(MAX_STREAMING_PROGRESS, math.floor(math.log10(rows + 1) * PROGRESS_SCALE))


class _FileIngestion:
    """Per-file state of one ingestion run."""

    def __init__(
        self,
        sink: PersistenceSink,
        file_id: str,
        session_id: str,
        batch_size: int,
        layout: FormatLayout,
        on_progress: Optional[ProgressCallback],
    ):
        self.sink = sink
        self.file_id = file_id
        self.session_id = session_id
        self.batch_size = batch_size
        self.layout = layout
        self.on_progress = on_progress

        self.state = IngestState.AWAITING_HEADER
        self.line_number = 0
        self.metadata_lines: list[str] = []
        self.header: Optional[FileHeader] = None
        self.channels: list[ChannelDescriptor] = []
        self.metadata: dict[str, str] = {}
        self.batch = self._new_batch()

        self.rows_processed = 0
        self.batches_flushed = 0
        self.parse_warnings = 0
        self.max_buffered_rows = 0
        self.progress = 0

    def _new_batch(self) -> IngestionBatch:
        return IngestionBatch(
            file_id=self.file_id,
            session_id=self.session_id,
            max_size=self.batch_size,
        )

    def feed_line(self, line: str) -> None:
        self.line_number += 1

        if self.state is IngestState.AWAITING_HEADER:
            if self.line_number < self.layout.header_line:
                if self.line_number <= self.layout.metadata_lines:
                    self.metadata_lines.append(line)
                return
            self.header = parse_header(line)
            self.state = IngestState.AWAITING_UNITS
            return

        if self.state is IngestState.AWAITING_UNITS:
            if self.line_number < self.layout.units_line:
                return
            self._bind_channels(parse_units(self.header, line))
            self.state = IngestState.SKIPPING_PREAMBLE
            return

        if self.state is IngestState.SKIPPING_PREAMBLE:
            if self.line_number < self.layout.data_start_line:
                return
            self.state = IngestState.READING_DATA

        self._read_row(line)

    def _bind_channels(self, header: FileHeader) -> None:
        self.header = header
        self.channels = normalize_columns(header.columns)
        if not any(d.key == TIME_KEY for d in self.channels):
            raise MalformedFileError(f"No '{TIME_KEY}' channel in header of file {self.file_id}")
        self.metadata = parse_metadata(self.metadata_lines)
        logger.info(
            f"Parsed header of file {self.file_id}: {len(self.channels)} channels, "
            f"{len(self.metadata)} metadata fields"
        )

    def _read_row(self, line: str) -> None:
        if not line.strip():
            return

        fields = split_fields(line)
        values = {}
        for descriptor in self.channels:
            if descriptor.column_index >= len(fields):
                continue
            text = fields[descriptor.column_index]
            if text == "":
                continue
            value = convert_value(descriptor, text)
            if value is None:
                self.parse_warnings += 1
                continue
            values[descriptor.key] = value

        time = values.pop(TIME_KEY, None)
        self.batch.append(
            TelemetryRow(
                session_id=self.session_id,
                file_id=self.file_id,
                row_index=self.rows_processed,
                time=time,
                values=values,
            )
        )
        self.rows_processed += 1
        self.max_buffered_rows = max(self.max_buffered_rows, len(self.batch))

        if self.batch.is_full:
            self.flush()

    def flush(self) -> None:
        if not len(self.batch):
            return
        self.sink.insert_rows(self.batch)
        self.batches_flushed += 1
        logger.debug(
            f"Flushed batch {self.batches_flushed} of file {self.file_id} "
            f"({len(self.batch)} rows, {self.rows_processed} total)"
        )
        self.batch = self._new_batch()

        self.progress = max(self.progress, progress_for_rows(self.rows_processed))
        self.sink.update_file_status(self.file_id, FileStatus.PROCESSING, self.progress)
        if self.on_progress is not None:
            self.on_progress(self.progress)

    def finish(self) -> None:
        if self.line_number < self.layout.min_lines:
            raise MalformedFileError(
                f"File {self.file_id} ended after {self.line_number} lines, "
                f"expected at least {self.layout.min_lines}"
            )

        self.state = IngestState.FLUSHING
        self.flush()
        self.sink.update_session_metrics(self.session_id, available_metrics(self.channels))
        self.sink.update_file_status(self.file_id, FileStatus.PROCESSED, 100)
        self.progress = 100
        if self.on_progress is not None:
            self.on_progress(100)
        self.state = IngestState.DONE

    def result(self) -> IngestionResult:
        return IngestionResult(
            file_id=self.file_id,
            session_id=self.session_id,
            state=self.state,
            rows_processed=self.rows_processed,
            batches_flushed=self.batches_flushed,
            parse_warnings=self.parse_warnings,
            max_buffered_rows=self.max_buffered_rows,
            channels=list(self.channels),
            metadata=dict(self.metadata),
        )


class StreamingIngestor:
    """
    Ingests telemetry files into a PersistenceSink.

    One instance can serve several files, including concurrently: all
    per-file state lives in the run created by each `ingest` call.
    """

    def __init__(
        self,
        sink: PersistenceSink,
        batch_size: int = DEFAULT_BATCH_SIZE,
        layout: FormatLayout = DEFAULT_LAYOUT,
    ):
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self._sink = sink
        self._batch_size = batch_size
        self._layout = layout

    @property
    def batch_size(self) -> int:
        return self._batch_size

    def ingest(
        self,
        file_id: str,
        session_id: str,
        chunks: Iterable[bytes],
        on_progress: Optional[ProgressCallback] = None,
    ) -> IngestionResult:
        """
        Stream one file into the sink.

        Args:
            file_id: File record to report status on
            session_id: Session the rows belong to
            chunks: Decompressed byte chunks of the file
            on_progress: Called with the progress percentage after each flush

        Returns:
            IngestionResult in state DONE

        Raises:
            MalformedFileError: The file does not have the expected layout
            SinkError: The sink failed; the file is marked failed first
        """
        run = _FileIngestion(
            self._sink, file_id, session_id, self._batch_size, self._layout, on_progress
        )
        logger.info(f"Ingesting file {file_id} into session {session_id}")

        try:
            self._sink.update_file_status(file_id, FileStatus.PROCESSING, 0)
            buffer = LineBuffer()
            for chunk in chunks:
                for line in buffer.feed(chunk):
                    run.feed_line(line)
            for line in buffer.finish():
                run.feed_line(line)
            run.finish()
        except Exception as exc:
            run.state = IngestState.FAILED
            logger.error(f"Ingestion of file {file_id} failed at line {run.line_number}: {exc}")
            self._mark_failed(file_id, exc)
            raise

        logger.info(
            f"Ingested file {file_id}: {run.rows_processed} rows in "
            f"{run.batches_flushed} batches, {run.parse_warnings} unparseable cells"
        )
        return run.result()

    def _mark_failed(self, file_id: str, exc: Exception) -> None:
        try:
            self._sink.update_file_status(file_id, FileStatus.FAILED, error=str(exc))
        except Exception as status_exc:
            logger.error(f"Could not mark file {file_id} as failed: {status_exc}")

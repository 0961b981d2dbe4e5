"""
Telemetry Repository - SQLite persistence for sessions, files and rows.

Implements both sides of the pipeline:
- PersistenceSink for the streaming ingestor (batched inserts, file status)
- MetricSource for the metric sampler (strided sampling, stats, bounds)

A connection is opened per operation so that ingestion running in worker
threads and API queries never share one. WAL mode lets readers proceed while
a batch is being written.
"""

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

from app.errors import NotFoundError, SessionNotReadyError, SinkError, UnknownMetricError
from app.models.telemetry import (
    ChannelDescriptor,
    FileRecord,
    FileStatus,
    IngestionBatch,
    MetricStats,
    SampledPoint,
    SessionRecord,
    TelemetryRow,
)
from app.services.sampler import sampling_stride
from app.services.sink import TimeRange


logger = logging.getLogger(__name__)


DEFAULT_BUSY_TIMEOUT_MS = 5000

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    available_metrics TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS uploaded_files (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    file_path TEXT NOT NULL,
    original_name TEXT NOT NULL,
    upload_status TEXT NOT NULL,
    processing_progress INTEGER NOT NULL DEFAULT 0,
    row_count INTEGER NOT NULL DEFAULT 0,
    error TEXT,
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS telemetry_data (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL,
    file_id TEXT NOT NULL,
    row_index INTEGER NOT NULL,
    time REAL,
    metrics TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_files_session ON uploaded_files(session_id);
CREATE INDEX IF NOT EXISTS idx_telemetry_session_time ON telemetry_data(session_id, time);
CREATE INDEX IF NOT EXISTS idx_telemetry_file ON telemetry_data(file_id);
"""


def _json_path(metric_key: str) -> str:
    return f'$."{metric_key}"'


def _time_filter(time_range: Optional[TimeRange]) -> tuple[str, list[float]]:
    if time_range is None:
        return "", []
    return " AND time BETWEEN ? AND ?", [time_range[0], time_range[1]]


class TelemetryRepository:
    """
    SQLite-backed store for telemetry sessions.

    Rows are stored one per data line with every channel value in a JSON
    object keyed by channel key; metric queries extract a single key with
    json_extract and keep only numeric values.
    """

    def __init__(self, db_path: Path, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS):
        """
        Initialize the repository and create the schema if needed.

        Args:
            db_path: SQLite database file. Its parent folder is created.
            busy_timeout_ms: How long a writer waits for a competing lock.
        """
        self._db_path = Path(db_path)
        self._busy_timeout_ms = busy_timeout_ms
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self.init_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """One transaction on a fresh connection; sqlite errors become SinkError."""
        try:
            conn = sqlite3.connect(self._db_path, timeout=self._busy_timeout_ms / 1000)
        except sqlite3.Error as exc:
            raise SinkError(f"Cannot open database {self._db_path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {int(self._busy_timeout_ms)}")
            conn.execute("PRAGMA foreign_keys = ON")
            with conn:
                yield conn
        except sqlite3.Error as exc:
            raise SinkError(f"Database operation failed: {exc}") from exc
        finally:
            conn.close()

    def init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(SCHEMA_SQL)
        logger.info(f"Telemetry database ready at {self._db_path}")

    # =========================================================================
    # Sessions and files
    # =========================================================================

    def create_session(self, name: str) -> SessionRecord:
        session = SessionRecord(
            id=uuid.uuid4().hex,
            name=name,
            created_at=datetime.now(tz=timezone.utc),
        )
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO sessions (id, name, available_metrics, created_at) VALUES (?, ?, '[]', ?)",
                (session.id, session.name, session.created_at.isoformat()),
            )
        logger.info(f"Created session {session.id} ({name})")
        return session

    def get_session(self, session_id: str) -> SessionRecord:
        """
        Get a session by ID.

        Raises:
            NotFoundError: No such session
        """
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Session not found: {session_id}")
        return SessionRecord(
            id=row["id"],
            name=row["name"],
            created_at=datetime.fromisoformat(row["created_at"]),
            available_metrics=[
                ChannelDescriptor.from_dict(d) for d in json.loads(row["available_metrics"])
            ],
        )

    def list_sessions(self) -> list[SessionRecord]:
        with self._connect() as conn:
            ids = [r["id"] for r in conn.execute("SELECT id FROM sessions ORDER BY created_at DESC")]
        return [self.get_session(session_id) for session_id in ids]

    def create_file(self, session_id: str, file_path: str, original_name: str) -> FileRecord:
        """Register an uploaded file as pending. The session must exist."""
        self.get_session(session_id)
        record = FileRecord(
            id=uuid.uuid4().hex,
            session_id=session_id,
            file_path=file_path,
            original_name=original_name,
            status=FileStatus.PENDING,
            created_at=datetime.now(tz=timezone.utc),
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO uploaded_files (
                    id, session_id, file_path, original_name,
                    upload_status, processing_progress, created_at
                ) VALUES (?, ?, ?, ?, ?, 0, ?)
                """,
                (
                    record.id,
                    record.session_id,
                    record.file_path,
                    record.original_name,
                    record.status.value,
                    record.created_at.isoformat(),
                ),
            )
        logger.info(f"Registered file {record.id} ({original_name}) in session {session_id}")
        return record

    def get_file(self, file_id: str) -> FileRecord:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM uploaded_files WHERE id = ?", (file_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"File not found: {file_id}")
        return self._row_to_file(row)

    def list_files(self, session_id: str) -> list[FileRecord]:
        self.get_session(session_id)
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM uploaded_files WHERE session_id = ? ORDER BY created_at",
                (session_id,),
            ).fetchall()
        return [self._row_to_file(row) for row in rows]

    def set_file_metadata(self, file_id: str, metadata: dict[str, str]) -> None:
        """Store the parsed metadata block of a file (venue, driver, ...)."""
        with self._connect() as conn:
            conn.execute(
                "UPDATE uploaded_files SET metadata = ? WHERE id = ?",
                (json.dumps(metadata), file_id),
            )

    def ensure_queryable(self, session_id: str, metric_keys: list[str]) -> None:
        """
        Refuse queries against sessions that cannot be served.

        Raises:
            NotFoundError: No such session
            SessionNotReadyError: A file of the session is not processed
            UnknownMetricError: A key is not among the session's metrics
        """
        session = self.get_session(session_id)
        with self._connect() as conn:
            pending = conn.execute(
                "SELECT COUNT(*) FROM uploaded_files WHERE session_id = ? AND upload_status != ?",
                (session_id, FileStatus.PROCESSED.value),
            ).fetchone()[0]
        if pending:
            raise SessionNotReadyError(
                f"Session {session_id} has {pending} file(s) not processed"
            )

        known = {d.key for d in session.available_metrics}
        for key in metric_keys:
            if key not in known:
                raise UnknownMetricError(f"Unknown metric for session {session_id}: {key}")

    def _row_to_file(self, row: sqlite3.Row) -> FileRecord:
        return FileRecord(
            id=row["id"],
            session_id=row["session_id"],
            file_path=row["file_path"],
            original_name=row["original_name"],
            status=FileStatus(row["upload_status"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            progress=row["processing_progress"],
            row_count=row["row_count"],
            error=row["error"],
            metadata=json.loads(row["metadata"]),
        )

    # =========================================================================
    # PersistenceSink
    # =========================================================================

    def insert_rows(self, batch: IngestionBatch) -> None:
        """Insert one batch in a single transaction."""
        if not len(batch):
            return
        params = [
            (row.session_id, row.file_id, row.row_index, row.time, json.dumps(row.values))
            for row in batch
        ]
        with self._connect() as conn:
            conn.executemany(
                """
                INSERT INTO telemetry_data (session_id, file_id, row_index, time, metrics)
                VALUES (?, ?, ?, ?, ?)
                """,
                params,
            )
        logger.debug(f"Inserted {len(params)} rows for file {batch.file_id}")

    def update_file_status(
        self,
        file_id: str,
        status: FileStatus,
        progress_percent: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        """
        Set a file's status, progress and error.

        Progress is left unchanged when not given. Marking a file processed
        also records its persisted row count.
        """
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE uploaded_files
                SET upload_status = ?,
                    processing_progress = COALESCE(?, processing_progress),
                    error = ?
                WHERE id = ?
                """,
                (status.value, progress_percent, error, file_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"File not found: {file_id}")
            if status is FileStatus.PROCESSED:
                conn.execute(
                    """
                    UPDATE uploaded_files
                    SET row_count = (SELECT COUNT(*) FROM telemetry_data WHERE file_id = ?)
                    WHERE id = ?
                    """,
                    (file_id, file_id),
                )

    def update_session_metrics(self, session_id: str, metrics: list[ChannelDescriptor]) -> None:
        """
        Publish a file's channels on its session.

        Keys already listed keep their descriptor; new keys are appended in
        column order.
        """
        with self._connect() as conn:
            row = conn.execute(
                "SELECT available_metrics FROM sessions WHERE id = ?", (session_id,)
            ).fetchone()
            if row is None:
                raise NotFoundError(f"Session not found: {session_id}")
            existing = json.loads(row["available_metrics"])
            seen = {d["key"] for d in existing}
            merged = existing + [m.to_dict() for m in metrics if m.key not in seen]
            conn.execute(
                "UPDATE sessions SET available_metrics = ? WHERE id = ?",
                (json.dumps(merged), session_id),
            )
        logger.info(f"Session {session_id} now lists {len(merged)} metrics")

    def clear_telemetry(self, session_id: str) -> None:
        """Delete all rows of a session and reset its available metrics."""
        with self._connect() as conn:
            deleted = conn.execute(
                "DELETE FROM telemetry_data WHERE session_id = ?", (session_id,)
            ).rowcount
            conn.execute(
                "UPDATE sessions SET available_metrics = '[]' WHERE id = ?", (session_id,)
            )
        logger.info(f"Cleared {deleted} telemetry rows from session {session_id}")

    def clear_file_rows(self, file_id: str) -> int:
        """Delete the rows a single file contributed, e.g. before re-ingesting it."""
        with self._connect() as conn:
            deleted = conn.execute(
                "DELETE FROM telemetry_data WHERE file_id = ?", (file_id,)
            ).rowcount
        logger.info(f"Cleared {deleted} telemetry rows of file {file_id}")
        return deleted

    # =========================================================================
    # MetricSource
    # =========================================================================

    def query_metric_stats(
        self,
        session_id: str,
        metric_key: str,
        time_range: Optional[TimeRange] = None,
    ) -> MetricStats:
        """count/min/max/avg over every in-range numeric value of a metric."""
        path = _json_path(metric_key)
        time_sql, time_params = _time_filter(time_range)
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT COUNT(*) AS n,
                       MIN(json_extract(metrics, ?)) AS lo,
                       MAX(json_extract(metrics, ?)) AS hi,
                       AVG(json_extract(metrics, ?)) AS mean
                FROM telemetry_data
                WHERE session_id = ?
                  AND time IS NOT NULL
                  AND json_type(metrics, ?) IN ('real', 'integer')
                  {time_sql}
                """,
                [path, path, path, session_id, path, *time_params],
            ).fetchone()
        if not row["n"]:
            return MetricStats(count=0)
        return MetricStats(
            count=row["n"],
            min=float(row["lo"]),
            max=float(row["hi"]),
            avg=float(row["mean"]),
        )

    def query_metric(
        self,
        session_id: str,
        metric_key: str,
        sample_size: int,
        time_range: Optional[TimeRange] = None,
    ) -> list[SampledPoint]:
        """
        Fixed-stride sample of one metric, ordered by (time, row_index).

        The candidate count is read first to derive the stride; the last
        candidate is always included.
        """
        n = self.query_metric_stats(session_id, metric_key, time_range).count
        if n == 0:
            return []
        stride = sampling_stride(n, sample_size)

        path = _json_path(metric_key)
        time_sql, time_params = _time_filter(time_range)
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                WITH candidates AS (
                    SELECT time,
                           json_extract(metrics, ?) AS value,
                           ROW_NUMBER() OVER (ORDER BY time, row_index, id) - 1 AS rn
                    FROM telemetry_data
                    WHERE session_id = ?
                      AND time IS NOT NULL
                      AND json_type(metrics, ?) IN ('real', 'integer')
                      {time_sql}
                )
                SELECT time, value FROM candidates
                WHERE rn % ? = 0 OR rn = ?
                ORDER BY rn
                """,
                [path, session_id, path, *time_params, stride, n - 1],
            ).fetchall()
        return [SampledPoint(time=float(r["time"]), value=float(r["value"])) for r in rows]

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
        with self._connect() as conn:
            row = conn.execute(
                "SELECT MIN(time) AS lo, MAX(time) AS hi FROM telemetry_data WHERE session_id = ?",
                (session_id,),
            ).fetchone()
        if row["lo"] is None:
            return None
        return (float(row["lo"]), float(row["hi"]))

    # =========================================================================
    # Bulk reads
    # =========================================================================

    def iter_rows(self, session_id: str, batch_size: int = 500) -> Iterator[list[TelemetryRow]]:
        """
        Stream a session's rows in insertion order, batch_size at a time.

        Uses keyset pagination on the row id so no connection stays open
        between batches.
        """
        last_id = 0
        while True:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, session_id, file_id, row_index, time, metrics
                    FROM telemetry_data
                    WHERE session_id = ? AND id > ?
                    ORDER BY id
                    LIMIT ?
                    """,
                    (session_id, last_id, batch_size),
                ).fetchall()
            if not rows:
                return
            last_id = rows[-1]["id"]
            yield [
                TelemetryRow(
                    session_id=r["session_id"],
                    file_id=r["file_id"],
                    row_index=r["row_index"],
                    time=r["time"],
                    values=json.loads(r["metrics"]),
                )
                for r in rows
            ]

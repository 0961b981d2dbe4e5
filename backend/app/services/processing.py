"""
Processing of stored uploads.

Glue between the upload store, the streaming ingestor and the repository:
reads a stored file back, decompresses it on the fly and ingests it.
"""

import logging

from app.errors import TelemetryError
from app.models.telemetry import FileStatus, IngestionResult
from app.services.decompression import open_decoded_stream, resolve_compression
from app.services.ingestor import StreamingIngestor
from app.services.repository import TelemetryRepository
from app.services.storage import UploadStore


logger = logging.getLogger(__name__)


def process_stored_file(
    file_id: str,
    repository: TelemetryRepository,
    store: UploadStore,
    ingestor: StreamingIngestor,
) -> IngestionResult:
    """
    Ingest a previously stored upload.

    The stored path's suffix selects the decompressor. Rows left by an
    earlier ingestion of the same file are deleted first. The file's metadata
    block (venue, driver, ...) is saved on its record once ingestion is done.
    """
    record = repository.get_file(file_id)
    try:
        resolve_compression(record.file_path)
        fh = store.open(record.file_path)
    except TelemetryError as exc:
        repository.update_file_status(file_id, FileStatus.FAILED, error=str(exc))
        raise

    with fh:
        repository.clear_file_rows(file_id)
        chunks = open_decoded_stream(fh, record.file_path)
        result = ingestor.ingest(record.id, record.session_id, chunks)
    repository.set_file_metadata(file_id, result.metadata)
    return result


def run_ingestion_job(
    file_id: str,
    repository: TelemetryRepository,
    store: UploadStore,
    ingestor: StreamingIngestor,
) -> None:
    """
    Background entry point.

    The failure is already recorded on the file record, so it is logged here
    instead of propagating into the worker.
    """
    try:
        result = process_stored_file(file_id, repository, store, ingestor)
    except TelemetryError as exc:
        logger.error(f"Background ingestion of file {file_id} failed: {exc}")
        return
    logger.info(f"Background ingestion of file {file_id} done ({result.rows_processed} rows)")

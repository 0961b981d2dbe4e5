"""
Upload storage.

Uploaded telemetry files are kept compressed on disk under the data folder,
one sub-folder per session. Plain CSV uploads are compressed on the way in;
uploads that already arrive compressed are stored as they are. The stored
path's suffix records the compression so the ingestor can pick the matching
decompressor later.
"""

import logging
import uuid
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Optional

from app.errors import NotFoundError, UnsupportedCompressionError
from app.services.decompression import (
    DEFAULT_CHUNK_SIZE,
    STORAGE_SUFFIX,
    Compression,
    compress_stream,
    iter_file_chunks,
    resolve_compression,
)


logger = logging.getLogger(__name__)


def detect_upload_compression(filename: str, content_type: Optional[str] = None) -> Compression:
    """
    Compression of an incoming upload, from its name first, then its content type.

    Raises:
        UnsupportedCompressionError: Neither hint is recognized.
    """
    try:
        return resolve_compression(filename)
    except UnsupportedCompressionError:
        if not content_type:
            raise
        return resolve_compression(content_type)


class UploadStore:
    """Stores uploads under a root folder and hands them back as binary streams."""

    def __init__(
        self,
        root: Path,
        compression: Compression = Compression.DEFLATE,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        self._root = Path(root)
        self._compression = compression
        self._chunk_size = chunk_size
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    @property
    def compression(self) -> Compression:
        return self._compression

    def save(
        self,
        session_id: str,
        fileobj: BinaryIO,
        filename: str,
        content_type: Optional[str] = None,
    ) -> str:
        """
        Store an upload and return its file path relative to the store root.

        Args:
            session_id: Session the upload belongs to
            fileobj: Binary stream of the upload
            filename: Client-side file name, used as compression hint
            content_type: Optional content type, used as fallback hint

        Returns:
            POSIX-style relative path, e.g. "<session>/<uuid>.deflate"
        """
        source = detect_upload_compression(filename, content_type)
        chunks = iter_file_chunks(fileobj, self._chunk_size)
        if source is Compression.NONE:
            stored = self._compression
            chunks = compress_stream(chunks, stored)
        else:
            stored = source

        rel_path = PurePosixPath(session_id) / f"{uuid.uuid4().hex}{STORAGE_SUFFIX[stored]}"
        target = self._root / rel_path
        target.parent.mkdir(parents=True, exist_ok=True)

        size = 0
        with open(target, "wb") as out:
            for chunk in chunks:
                out.write(chunk)
                size += len(chunk)

        logger.info(f"Stored upload {filename} as {rel_path} ({size} bytes, {stored.value})")
        return str(rel_path)

    def open(self, file_path: str) -> BinaryIO:
        """Open a stored upload for reading."""
        path = self._resolve(file_path)
        if not path.is_file():
            raise NotFoundError(f"Stored upload not found: {file_path}")
        return open(path, "rb")

    def _resolve(self, file_path: str) -> Path:
        root = self._root.resolve()
        path = (root / file_path).resolve()
        if root not in path.parents:
            raise NotFoundError(f"Stored upload not found: {file_path}")
        return path

"""
Decompression adapter.

Uploads are stored compressed (deflate by default) and streamed back through
a zlib decompressor so that files of hundreds of megabytes are never held in
memory as a whole.
"""

import logging
import zlib
from enum import Enum
from pathlib import PurePosixPath
from typing import BinaryIO, Iterable, Iterator

from app.errors import MalformedFileError, UnsupportedCompressionError


logger = logging.getLogger(__name__)


DEFAULT_CHUNK_SIZE = 64 * 1024
MAX_INFLATE_CHUNK = 256 * 1024


class Compression(Enum):
    NONE = "none"
    DEFLATE = "deflate"
    GZIP = "gzip"


# File suffix hints
SUFFIX_HINTS = {
    ".csv": Compression.NONE,
    ".txt": Compression.NONE,
    ".deflate": Compression.DEFLATE,
    ".zz": Compression.DEFLATE,
    ".gz": Compression.GZIP,
    ".gzip": Compression.GZIP,
}

# Content-type hints
CONTENT_TYPE_HINTS = {
    "text/csv": Compression.NONE,
    "text/plain": Compression.NONE,
    "application/zlib": Compression.DEFLATE,
    "application/x-deflate": Compression.DEFLATE,
    "application/gzip": Compression.GZIP,
    "application/x-gzip": Compression.GZIP,
}

# zlib wbits per method: zlib container for deflate, gzip header for gzip
_WBITS = {
    Compression.DEFLATE: zlib.MAX_WBITS,
    Compression.GZIP: 16 + zlib.MAX_WBITS,
}

# Suffix appended to stored uploads
STORAGE_SUFFIX = {
    Compression.NONE: ".csv",
    Compression.DEFLATE: ".deflate",
    Compression.GZIP: ".gz",
}


def resolve_compression(hint: str) -> Compression:
    """
    Select the compression method from a file name, extension or content type.

    Raises:
        UnsupportedCompressionError: The hint matches none of the known methods.
    """
    normalized = (hint or "").strip().lower()

    content_type = normalized.split(";")[0].strip()
    if content_type in CONTENT_TYPE_HINTS:
        return CONTENT_TYPE_HINTS[content_type]

    # Method names ("gzip") and bare suffixes (".gz") are accepted as-is
    for method in Compression:
        if normalized == method.value:
            return method
    if normalized in SUFFIX_HINTS:
        return SUFFIX_HINTS[normalized]

    # File names and storage paths: only the last suffix counts
    suffix = PurePosixPath(normalized).suffix
    if suffix in SUFFIX_HINTS:
        return SUFFIX_HINTS[suffix]
    raise UnsupportedCompressionError(f"Unsupported compression hint: {hint!r}")


def iter_file_chunks(fileobj: BinaryIO, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
    """Read a binary file object lazily in fixed-size chunks."""
    while True:
        chunk = fileobj.read(chunk_size)
        if not chunk:
            return
        yield chunk


def decompress_stream(chunks: Iterable[bytes], compression: Compression) -> Iterator[bytes]:
    """
    Wrap a byte-chunk stream with the matching decompression transform.

    Each decompressed piece is at most MAX_INFLATE_CHUNK bytes. Gzip input may
    hold several concatenated members; they are decoded in order.

    Raises:
        MalformedFileError: The compressed payload is corrupt or truncated.
    """
    if compression is Compression.NONE:
        yield from chunks
        return

    wbits = _WBITS[compression]
    decompressor = zlib.decompressobj(wbits)
    try:
        for chunk in chunks:
            data = chunk
            while True:
                out = decompressor.decompress(data, MAX_INFLATE_CHUNK)
                if out:
                    yield out
                if (
                    compression is Compression.GZIP
                    and decompressor.eof
                    and decompressor.unused_data
                ):
                    data = decompressor.unused_data
                    decompressor = zlib.decompressobj(wbits)
                    continue
                data = decompressor.unconsumed_tail
                # a full piece may leave output pending inside the decompressor
                if not data and len(out) < MAX_INFLATE_CHUNK:
                    break
        tail = decompressor.flush()
        if tail:
            yield tail
    except zlib.error as exc:
        raise MalformedFileError(f"Corrupt {compression.value} stream: {exc}") from exc

    if not decompressor.eof:
        raise MalformedFileError(f"Truncated {compression.value} stream")


def compress_stream(
    chunks: Iterable[bytes],
    compression: Compression,
    level: int = 6,
) -> Iterator[bytes]:
    """Streaming compressor, the inverse of decompress_stream."""
    if compression is Compression.NONE:
        yield from chunks
        return

    compressor = zlib.compressobj(level, zlib.DEFLATED, _WBITS[compression])
    for chunk in chunks:
        out = compressor.compress(chunk)
        if out:
            yield out
    yield compressor.flush()


def open_decoded_stream(
    fileobj: BinaryIO,
    hint: str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> Iterator[bytes]:
    """Read a stored file and transparently decompress it based on `hint`."""
    compression = resolve_compression(hint)
    logger.debug(f"Opening stream with compression={compression.value} (hint={hint!r})")
    return decompress_stream(iter_file_chunks(fileobj, chunk_size), compression)

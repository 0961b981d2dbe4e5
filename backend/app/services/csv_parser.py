"""
MoTeC-style telemetry CSV format reader.

Data-logger exports have a fixed multi-section layout:
- lines 1-14: metadata block ("Venue","Silverstone",...)
- line 15: channel names
- line 16: one unit per channel (may be empty)
- line 17+: data rows

Decoding of raw bytes and line splitting also live here so that both the
streaming ingestor and header-only reads share the same rules.
"""

import codecs
import re
from dataclasses import dataclass
from typing import Iterable, Iterator

from app.errors import MalformedFileError
from app.models.raw import FileHeader


@dataclass(frozen=True)
class FormatLayout:
    """Line positions (1-based) of the sections of a telemetry file."""

    metadata_lines: int = 14
    header_line: int = 15
    units_line: int = 16
    data_start_line: int = 17

    @property
    def min_lines(self) -> int:
        return self.data_start_line


DEFAULT_LAYOUT = FormatLayout()

_METADATA_KEY = re.compile(r"[A-Za-z]")


def strip_quotes(token: str) -> str:
    """Trim whitespace and strip one surrounding double-quote pair."""
    token = token.strip()
    if len(token) >= 2 and token[0] == '"' and token[-1] == '"':
        return token[1:-1]
    return token


def split_fields(line: str) -> list[str]:
    """
    Split a line on commas.

    Quoted fields containing commas or escaped quotes are not supported.
    """
    return [strip_quotes(v) for v in line.split(",")]


def parse_header_lines(
    lines: list[str],
    layout: FormatLayout = DEFAULT_LAYOUT,
) -> FileHeader:
    """
    Parse the metadata, header and units sections from the first lines of a file.

    Args:
        lines: Decoded lines from the start of the file (at least
            `layout.min_lines` of them).
        layout: Section positions.

    Returns:
        FileHeader with headers and units aligned by index.

    Raises:
        MalformedFileError: Too few lines, or a blank header/units line.
    """
    if len(lines) < layout.min_lines:
        raise MalformedFileError(
            f"Expected at least {layout.min_lines} lines before data, got {len(lines)}"
        )
    header_line = lines[layout.header_line - 1]
    units_line = lines[layout.units_line - 1]
    header = parse_header(header_line)
    header = parse_units(header, units_line)
    return FileHeader(
        headers=header.headers,
        units=header.units,
        metadata=[line.strip() for line in lines[: layout.metadata_lines]],
    )


def parse_header(line: str) -> FileHeader:
    """Parse the channel-name line. Units are filled with empty strings."""
    if not line.strip():
        raise MalformedFileError("Header line is empty")
    headers = split_fields(line)
    return FileHeader(headers=headers, units=[""] * len(headers))


def parse_units(header: FileHeader, line: str) -> FileHeader:
    """
    Attach the units line to a parsed header.

    The header's channel count is authoritative: missing units become empty
    strings and surplus units are dropped.
    """
    if not line.strip():
        raise MalformedFileError("Units line is empty")
    units = split_fields(line)
    n = len(header.headers)
    units = (units + [""] * n)[:n]
    return FileHeader(headers=header.headers, units=units, metadata=header.metadata)


def parse_metadata(metadata_lines: Iterable[str]) -> dict[str, str]:
    """
    Parse the metadata block into a key/value mapping.

    MoTeC writes lines like `"Venue","Silverstone",,,`; the first field is the
    key and the second the value. Lines without a usable key are skipped.
    """
    result: dict[str, str] = {}
    for line in metadata_lines:
        fields = split_fields(line)
        if not fields or not _METADATA_KEY.search(fields[0]):
            continue
        key = fields[0].strip()
        value = fields[1].strip() if len(fields) > 1 else ""
        if key not in result:
            result[key] = value
    return result


class LineBuffer:
    """
    Incremental bytes -> lines splitter.

    Holds at most one partial line between chunks. Handles a UTF-8 BOM and
    multi-byte characters split across chunk boundaries.
    """

    def __init__(self, encoding: str = "utf-8-sig"):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._pending = ""

    @property
    def pending(self) -> str:
        return self._pending

    def feed(self, chunk: bytes) -> Iterator[str]:
        """Decode a chunk and yield every complete line it closes."""
        self._pending += self._decoder.decode(chunk)
        yield from self._drain()

    def finish(self) -> Iterator[str]:
        """Flush the decoder and yield the trailing partial line, if any."""
        self._pending += self._decoder.decode(b"", final=True)
        yield from self._drain()
        if self._pending:
            line, self._pending = self._pending, ""
            yield line.rstrip("\r")

    def _drain(self) -> Iterator[str]:
        if "\n" not in self._pending:
            return
        *lines, self._pending = self._pending.split("\n")
        for line in lines:
            yield line.rstrip("\r")


def iter_lines(chunks: Iterable[bytes]) -> Iterator[str]:
    """Yield decoded lines from a stream of byte chunks."""
    buffer = LineBuffer()
    for chunk in chunks:
        yield from buffer.feed(chunk)
    yield from buffer.finish()


def read_file_header(
    chunks: Iterable[bytes],
    layout: FormatLayout = DEFAULT_LAYOUT,
) -> FileHeader:
    """
    Read just the header section of a file, stopping once the units line is seen.
    """
    lines: list[str] = []
    for line in iter_lines(chunks):
        lines.append(line)
        if len(lines) >= layout.min_lines:
            break
    return parse_header_lines(lines, layout)

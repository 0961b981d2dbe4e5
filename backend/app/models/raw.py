"""
Raw column model (source-format, unnormalized).

The format reader produces these from the header and units lines before the
schema normalizer maps them onto channel descriptors.
"""

from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class RawColumn:
    """One CSV column as discovered at parse time."""

    original_header: str
    unit: str  # may be empty for unitless channels
    column_index: int


@dataclass(frozen=True)
class FileHeader:
    """Header section of a telemetry file: metadata block, channel names and units."""

    headers: list[str]
    units: list[str]
    metadata: list[str] = field(default_factory=list)

    @property
    def columns(self) -> list[RawColumn]:
        return [
            RawColumn(original_header=h, unit=self.units[i], column_index=i)
            for i, h in enumerate(self.headers)
        ]

    @property
    def channel_count(self) -> int:
        return len(self.headers)

    def column_index(self, header: str) -> Optional[int]:
        try:
            return self.headers.index(header)
        except ValueError:
            return None

    def unit_for(self, header: str) -> Optional[str]:
        idx = self.column_index(header)
        if idx is None:
            return None
        return self.units[idx]

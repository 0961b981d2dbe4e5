"""
Application settings, read from environment variables.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from app.models.telemetry import DEFAULT_BATCH_SIZE, DEFAULT_SAMPLE_SIZE
from app.services.decompression import Compression


DATA_FOLDER_ENV = "TELEMETRY_DATA_FOLDER"
DB_PATH_ENV = "TELEMETRY_DB_PATH"
BATCH_SIZE_ENV = "TELEMETRY_BATCH_SIZE"
SAMPLE_SIZE_ENV = "TELEMETRY_SAMPLE_SIZE"
UPLOAD_COMPRESSION_ENV = "TELEMETRY_UPLOAD_COMPRESSION"
LOG_LEVEL_ENV = "TELEMETRY_LOG_LEVEL"

DEFAULT_DATA_FOLDER = Path("./data")
DB_FILENAME = "telemetry.db"
UPLOADS_FOLDER = "uploads"


@dataclass
class Settings:
    """Runtime configuration of the telemetry backend."""

    data_folder: Path = DEFAULT_DATA_FOLDER
    db_path: Optional[Path] = None  # defaults to <data_folder>/telemetry.db
    batch_size: int = DEFAULT_BATCH_SIZE
    sample_size: int = DEFAULT_SAMPLE_SIZE
    upload_compression: Compression = Compression.DEFLATE
    log_level: str = "INFO"

    def __post_init__(self):
        self.data_folder = Path(self.data_folder)
        if self.db_path is None:
            self.db_path = self.data_folder / DB_FILENAME
        self.db_path = Path(self.db_path)
        if self.batch_size < 1:
            raise ValueError(f"{BATCH_SIZE_ENV} must be positive, got {self.batch_size}")
        if self.sample_size < 2:
            raise ValueError(f"{SAMPLE_SIZE_ENV} must be >= 2, got {self.sample_size}")

    @property
    def uploads_folder(self) -> Path:
        return self.data_folder / UPLOADS_FOLDER

    @property
    def log_level_value(self) -> int:
        level = logging.getLevelName(self.log_level.upper())
        return level if isinstance(level, int) else logging.INFO

    @classmethod
    def from_env(cls) -> "Settings":
        data_folder = Path(os.getenv(DATA_FOLDER_ENV, str(DEFAULT_DATA_FOLDER)))
        db_path = os.getenv(DB_PATH_ENV)
        return cls(
            data_folder=data_folder,
            db_path=Path(db_path) if db_path else None,
            batch_size=int(os.getenv(BATCH_SIZE_ENV, str(DEFAULT_BATCH_SIZE))),
            sample_size=int(os.getenv(SAMPLE_SIZE_ENV, str(DEFAULT_SAMPLE_SIZE))),
            upload_compression=Compression(
                os.getenv(UPLOAD_COMPRESSION_ENV, Compression.DEFLATE.value).lower()
            ),
            log_level=os.getenv(LOG_LEVEL_ENV, "INFO"),
        )

"""
Shared fixtures.
"""

import os
import tempfile

# app.main builds an application from the environment at import time
os.environ.setdefault("TELEMETRY_DATA_FOLDER", tempfile.mkdtemp(prefix="telemetry-tests-"))

from typing import Optional

import pytest

from app.errors import SinkError
from app.models.telemetry import ChannelDescriptor, FileStatus, IngestionBatch
from app.utils.sample_data import motec_csv_bytes


class RecordingSink:
    """In-memory PersistenceSink that records every call."""

    def __init__(self, fail_on_insert: int = 0):
        self.batches: list[IngestionBatch] = []
        self.statuses: list[tuple[str, FileStatus, Optional[int], Optional[str]]] = []
        self.session_metrics: dict[str, list[ChannelDescriptor]] = {}
        self.metrics_updates = 0
        self.fail_on_insert = fail_on_insert

    @property
    def rows(self):
        return [row for batch in self.batches for row in batch]

    def insert_rows(self, batch):
        if self.fail_on_insert and len(self.batches) + 1 >= self.fail_on_insert:
            raise SinkError("disk full")
        self.batches.append(batch)

    def update_file_status(self, file_id, status, progress_percent=None, error=None):
        self.statuses.append((file_id, status, progress_percent, error))

    def update_session_metrics(self, session_id, metrics):
        self.metrics_updates += 1
        self.session_metrics[session_id] = list(metrics)

    def clear_telemetry(self, session_id):
        self.batches = [b for b in self.batches if b.session_id != session_id]
        self.session_metrics[session_id] = []


@pytest.fixture
def recording_sink():
    return RecordingSink()


@pytest.fixture
def failing_sink():
    """Sink whose second insert fails."""
    return RecordingSink(fail_on_insert=2)


@pytest.fixture
def scenario_bytes():
    """
    20-line file: 14 metadata lines, header, units and 4 data rows.

    One row per second. Ground speed is logged in m/s (10, 20, 15, 25),
    engine speed in RPM (1000, 2000, 1500, 2500).
    """
    return motec_csv_bytes(
        headers=["Time", "Ground Speed", "Engine Speed"],
        units=["s", "m/s", "RPM"],
        rows=[
            [0, 10, 1000],
            [1, 20, 2000],
            [2, 15, 1500],
            [3, 25, 2500],
        ],
    )

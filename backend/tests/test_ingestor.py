"""
Tests for the streaming ingestor.
"""

import pytest

from app.errors import MalformedFileError, SinkError
from app.models.telemetry import FileStatus, IngestState
from app.services.csv_parser import FormatLayout
from app.services.decompression import iter_file_chunks
from app.services.ingestor import StreamingIngestor, progress_for_rows
from app.utils.sample_data import (
    build_metadata_block,
    generate_circuit_lap,
    generate_motec_run,
    motec_csv_bytes,
)


def _chunked(data: bytes, size: int = 4096):
    return (data[i:i + size] for i in range(0, len(data), size))


@pytest.fixture
def large_file_bytes():
    """~6000 data rows."""
    headers, units, rows = generate_circuit_lap(duration_s=300.0, sample_rate_hz=20.0, seed=7)
    return motec_csv_bytes(headers, units, rows)


class TestScenario:
    """End-to-end ingestion of a small file."""

    def test_four_rows_ingested(self, recording_sink, scenario_bytes):
        result = StreamingIngestor(recording_sink).ingest("f1", "s1", [scenario_bytes])

        assert result.state is IngestState.DONE
        assert result.rows_processed == 4
        assert [row.time for row in recording_sink.rows] == [0.0, 1.0, 2.0, 3.0]

    def test_speed_converted_to_kmh(self, recording_sink, scenario_bytes):
        StreamingIngestor(recording_sink).ingest("f1", "s1", [scenario_bytes])

        speeds = [row.values["ground_speed"] for row in recording_sink.rows]
        assert speeds == pytest.approx([36.0, 72.0, 54.0, 90.0])

    def test_available_metrics_published_once(self, recording_sink, scenario_bytes):
        StreamingIngestor(recording_sink).ingest("f1", "s1", [scenario_bytes])

        assert recording_sink.metrics_updates == 1
        keys = {d.key for d in recording_sink.session_metrics["s1"]}
        assert keys == {"ground_speed", "engine_speed"}

    def test_status_sequence(self, recording_sink, scenario_bytes):
        StreamingIngestor(recording_sink).ingest("f1", "s1", [scenario_bytes])

        statuses = recording_sink.statuses
        assert statuses[0] == ("f1", FileStatus.PROCESSING, 0, None)
        assert statuses[-1] == ("f1", FileStatus.PROCESSED, 100, None)

    def test_metadata_parsed(self, recording_sink, scenario_bytes):
        result = StreamingIngestor(recording_sink).ingest("f1", "s1", [scenario_bytes])

        assert result.metadata["Venue"] == "Silverstone"

    def test_byte_at_a_time(self, recording_sink, scenario_bytes):
        chunks = (scenario_bytes[i:i + 1] for i in range(len(scenario_bytes)))

        result = StreamingIngestor(recording_sink).ingest("f1", "s1", chunks)

        assert result.rows_processed == 4

    def test_crlf_line_endings(self, recording_sink):
        data = motec_csv_bytes(
            ["Time", "Gear"], ["s", ""], [[0.0, 1], [0.1, 2]], line_ending="\r\n"
        )

        StreamingIngestor(recording_sink).ingest("f1", "s1", [data])

        assert [row.values["gear"] for row in recording_sink.rows] == [1.0, 2.0]

    def test_trailing_line_without_newline(self, recording_sink, scenario_bytes):
        assert not scenario_bytes.endswith(b"\n")

        StreamingIngestor(recording_sink).ingest("f1", "s1", [scenario_bytes])

        assert recording_sink.rows[-1].time == 3.0

    def test_generated_file_from_disk(self, recording_sink, tmp_path):
        path = generate_motec_run(tmp_path / "lap.csv", duration_s=10.0, speed_unit="mph", seed=5)

        with open(path, "rb") as fh:
            result = StreamingIngestor(recording_sink).ingest("f1", "s1", iter_file_chunks(fh, 1024))

        assert result.rows_processed == 200
        assert result.metadata["Duration"] == "10.000"


class TestStreamingBound:
    """Buffered rows never exceed the batch size."""

    def test_max_buffered_rows(self, recording_sink, large_file_bytes):
        ingestor = StreamingIngestor(recording_sink, batch_size=500)

        result = ingestor.ingest("f1", "s1", _chunked(large_file_bytes))

        assert result.rows_processed == 6000
        assert result.max_buffered_rows <= 500
        assert all(len(batch) <= 500 for batch in recording_sink.batches)
        assert result.batches_flushed == 12

    def test_small_batches(self, recording_sink, large_file_bytes):
        result = StreamingIngestor(recording_sink, batch_size=7).ingest(
            "f1", "s1", _chunked(large_file_bytes, 100)
        )

        assert result.max_buffered_rows <= 7
        assert sum(len(b) for b in recording_sink.batches) == result.rows_processed

    def test_rows_in_file_order(self, recording_sink, large_file_bytes):
        StreamingIngestor(recording_sink, batch_size=100).ingest("f1", "s1", _chunked(large_file_bytes))

        indexes = [row.row_index for row in recording_sink.rows]
        assert indexes == list(range(len(indexes)))

    def test_whole_file_in_one_chunk(self, recording_sink):
        rows = [[i * 0.01, i % 300] for i in range(50_000)]
        data = motec_csv_bytes(["Time", "Ground Speed"], ["s", "km/h"], rows)

        result = StreamingIngestor(recording_sink, batch_size=1000).ingest("f1", "s1", [data])

        assert result.rows_processed == 50_000
        assert result.max_buffered_rows <= 1000
        assert recording_sink.rows[-1].row_index == 49_999

    def test_invalid_batch_size(self, recording_sink):
        with pytest.raises(ValueError):
            StreamingIngestor(recording_sink, batch_size=0)


class TestProgress:
    """Tests for progress reporting."""

    def test_progress_formula(self):
        assert progress_for_rows(0) == 0
        assert progress_for_rows(9) == 23
        assert progress_for_rows(99) == 46
        assert progress_for_rows(10**9) == 95

    def test_progress_monotonic_and_capped(self, recording_sink, large_file_bytes):
        seen = []
        StreamingIngestor(recording_sink, batch_size=50).ingest(
            "f1", "s1", _chunked(large_file_bytes), on_progress=seen.append
        )

        assert seen == sorted(seen)
        assert seen[-1] == 100
        assert max(seen[:-1]) <= 95


class TestRowContents:
    """Tests for per-cell handling."""

    def test_missing_cells_omitted(self, recording_sink):
        data = motec_csv_bytes(
            ["Time", "Engine Speed", "Gear"], ["s", "rpm", ""], [[0.0, None, 3], [0.1, 6000]]
        )

        StreamingIngestor(recording_sink).ingest("f1", "s1", [data])

        first, second = recording_sink.rows
        assert "engine_speed" not in first.values
        assert first.values["gear"] == 3.0
        assert "gear" not in second.values

    def test_unparseable_cells_counted(self, recording_sink):
        data = motec_csv_bytes(["Time", "Engine Speed"], ["s", "rpm"], [[0.0, "n/a"], [0.1, 6000]])

        result = StreamingIngestor(recording_sink).ingest("f1", "s1", [data])

        assert result.parse_warnings == 1
        assert result.rows_processed == 2

    def test_row_without_time_retained(self, recording_sink):
        data = motec_csv_bytes(["Time", "Engine Speed"], ["s", "rpm"], [["", 5000], [0.1, 6000]])

        StreamingIngestor(recording_sink).ingest("f1", "s1", [data])

        assert recording_sink.rows[0].time is None
        assert recording_sink.rows[0].values == {"engine_speed": 5000.0}

    def test_extra_cells_ignored(self, recording_sink):
        lines = build_metadata_block() + ['"Time","Gear"', '"s",""', '"0.0","2","99","100"']

        StreamingIngestor(recording_sink).ingest("f1", "s1", ["\n".join(lines).encode()])

        assert recording_sink.rows[0].values == {"gear": 2.0}

    def test_blank_lines_skipped(self, recording_sink):
        lines = build_metadata_block() + ['"Time","Gear"', '"s",""', "0.0,1", "", "0.1,2", ""]

        result = StreamingIngestor(recording_sink).ingest("f1", "s1", ["\n".join(lines).encode()])

        assert result.rows_processed == 2

    def test_text_channel_stored_as_string(self, recording_sink):
        data = motec_csv_bytes(["Time", "GPS Time"], ["s", ""], [[0.0, "14:30:00.000"]])

        StreamingIngestor(recording_sink).ingest("f1", "s1", [data])

        assert recording_sink.rows[0].values["gps_time"] == "14:30:00.000"

    def test_custom_layout(self, recording_sink):
        lines = ['"Venue","Spa"', '"Time","Gear"', '"s",""', '"ignored"', "0.0,4"]
        layout = FormatLayout(metadata_lines=1, header_line=2, units_line=3, data_start_line=5)

        result = StreamingIngestor(recording_sink, layout=layout).ingest(
            "f1", "s1", ["\n".join(lines).encode()]
        )

        assert result.rows_processed == 1
        assert result.metadata == {"Venue": "Spa"}


class TestFailures:
    """Fatal errors mark the file failed and propagate."""

    def test_truncated_before_units(self, recording_sink):
        data = "\n".join(build_metadata_block() + ['"Time","Gear"']).encode()

        with pytest.raises(MalformedFileError):
            StreamingIngestor(recording_sink).ingest("f1", "s1", [data])

        file_id, status, _, error = recording_sink.statuses[-1]
        assert status is FileStatus.FAILED
        assert error

    def test_header_and_units_without_rows(self, recording_sink):
        data = "\n".join(build_metadata_block() + ['"Time","Gear"', '"s",""']).encode() + b"\n"

        with pytest.raises(MalformedFileError):
            StreamingIngestor(recording_sink).ingest("f1", "s1", [data])

        assert recording_sink.statuses[-1][1] is FileStatus.FAILED
        assert recording_sink.metrics_updates == 0
        assert recording_sink.rows == []

    def test_missing_time_channel(self, recording_sink):
        data = motec_csv_bytes(["Engine Speed"], ["rpm"], [[5000]])

        with pytest.raises(MalformedFileError):
            StreamingIngestor(recording_sink).ingest("f1", "s1", [data])

        assert recording_sink.statuses[-1][1] is FileStatus.FAILED
        assert recording_sink.metrics_updates == 0

    def test_sink_failure(self, failing_sink, large_file_bytes):
        with pytest.raises(SinkError):
            StreamingIngestor(failing_sink, batch_size=100).ingest(
                "f1", "s1", _chunked(large_file_bytes)
            )

        assert len(failing_sink.batches) == 1
        assert failing_sink.statuses[-1][1] is FileStatus.FAILED
        assert all(s[1] is not FileStatus.PROCESSED for s in failing_sink.statuses)

    def test_status_failure_does_not_mask_error(self, recording_sink, scenario_bytes):
        def broken_status(*args, **kwargs):
            raise SinkError("status table locked")

        recording_sink.update_file_status = broken_status

        with pytest.raises(SinkError, match="status table locked"):
            StreamingIngestor(recording_sink).ingest("f1", "s1", [scenario_bytes])

    def test_decoder_error_marks_failed(self, recording_sink):
        def chunks():
            yield b"partial"
            raise MalformedFileError("Corrupt deflate stream")

        with pytest.raises(MalformedFileError):
            StreamingIngestor(recording_sink).ingest("f1", "s1", chunks())

        assert recording_sink.statuses[-1][1] is FileStatus.FAILED

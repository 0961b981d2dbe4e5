"""
Tests for API endpoints.
"""

import gzip

import pytest
from fastapi.testclient import TestClient

from app.config import Settings
from app.main import APP_NAME, create_app
from app.services.columnar import ColumnarStore
from app.utils.sample_data import motec_csv_bytes


@pytest.fixture
def client(tmp_path):
    """Test client over a fresh data folder."""
    app = create_app(Settings(data_folder=tmp_path / "data", batch_size=2))
    with TestClient(app) as client:
        yield client


@pytest.fixture
def session_id(client):
    response = client.post("/sessions", json={"name": "Silverstone FP1"})
    assert response.status_code == 201
    return response.json()["id"]


def _upload(client, session_id, data, filename="run.csv", content_type="text/csv"):
    return client.post(
        f"/sessions/{session_id}/files",
        files={"file": (filename, data, content_type)},
    )


@pytest.fixture
def uploaded(client, session_id, scenario_bytes):
    """Session with the scenario file uploaded and ingested."""
    response = _upload(client, session_id, scenario_bytes)
    assert response.status_code == 202
    return session_id, response.json()["id"]


class TestHealthEndpoints:
    """Tests for health check endpoints."""

    def test_root_endpoint(self, client):
        response = client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert data["name"] == APP_NAME
        assert data["status"] == "running"

    def test_health_endpoint(self, client, session_id):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["session_count"] == 1


class TestSessionEndpoints:
    """Tests for session management."""

    def test_create_and_list(self, client, session_id):
        sessions = client.get("/sessions").json()

        assert [s["id"] for s in sessions] == [session_id]
        assert sessions[0]["name"] == "Silverstone FP1"
        assert sessions[0]["available_metrics"] == []

    def test_empty_name_rejected(self, client):
        response = client.post("/sessions", json={"name": ""})

        assert response.status_code == 422

    def test_unknown_session(self, client):
        assert client.get("/sessions/missing").status_code == 404
        assert client.get("/sessions/missing/metrics").status_code == 404
        assert client.post("/sessions/missing/clear").status_code == 404


class TestUpload:
    """Tests for upload and background ingestion."""

    def test_upload_processed(self, client, uploaded):
        session_id, file_id = uploaded

        data = client.get(f"/files/{file_id}").json()

        assert data["status"] == "processed"
        assert data["progress"] == 100
        assert data["row_count"] == 4
        assert data["metadata"]["Venue"] == "Silverstone"
        assert data["file_path"].endswith(".deflate")

    def test_session_files(self, client, uploaded):
        session_id, file_id = uploaded

        files = client.get(f"/sessions/{session_id}/files").json()

        assert [f["id"] for f in files] == [file_id]

    def test_gzip_upload(self, client, session_id, scenario_bytes):
        response = _upload(
            client, session_id, gzip.compress(scenario_bytes), "run.csv.gz", "application/gzip"
        )

        data = client.get(f"/files/{response.json()['id']}").json()
        assert data["status"] == "processed"
        assert data["file_path"].endswith(".gz")

    def test_unsupported_compression(self, client, session_id, scenario_bytes):
        response = _upload(client, session_id, scenario_bytes, "run.zip", "application/zip")

        assert response.status_code == 400

    def test_upload_to_unknown_session(self, client, scenario_bytes):
        assert _upload(client, "missing", scenario_bytes).status_code == 404

    def test_malformed_file_marked_failed(self, client, session_id):
        data = motec_csv_bytes(["Engine Speed"], ["rpm"], [[5000]])

        file_id = _upload(client, session_id, data).json()["id"]

        status = client.get(f"/files/{file_id}").json()
        assert status["status"] == "failed"
        assert "time" in status["error"].lower()

    def test_corrupt_gzip_marked_failed(self, client, session_id):
        file_id = _upload(client, session_id, b"not gzip at all", "run.csv.gz").json()["id"]

        assert client.get(f"/files/{file_id}").json()["status"] == "failed"

    def test_unknown_file(self, client):
        assert client.get("/files/missing").status_code == 404


class TestMetricEndpoints:
    """Tests for metric listing and sampling."""

    def test_metrics(self, client, uploaded):
        session_id, _ = uploaded

        metrics = client.get(f"/sessions/{session_id}/metrics").json()

        assert [m["key"] for m in metrics] == ["ground_speed", "engine_speed"]
        assert metrics[0]["unit"] == "km/h"
        assert metrics[0]["source_unit"] == "m/s"

    def test_metrics_by_category(self, client, uploaded):
        session_id, _ = uploaded

        metrics = client.get(f"/sessions/{session_id}/metrics", params={"category": "engine"}).json()

        assert [m["key"] for m in metrics] == ["engine_speed"]

    def test_samples(self, client, uploaded):
        session_id, _ = uploaded

        response = client.get(
            f"/sessions/{session_id}/metrics/ground_speed/samples", params={"sample_size": 10}
        )

        assert response.status_code == 200
        data = response.json()
        assert len(data["points"]) == 4
        assert [p["value"] for p in data["points"]] == pytest.approx([36.0, 72.0, 54.0, 90.0])
        assert data["stats"]["max"] == pytest.approx(90.0)
        assert data["total_points"] == 4
        assert data["bounds"] == {"start": 0.0, "end": 3.0}

    def test_samples_downsampled(self, client, uploaded):
        session_id, _ = uploaded

        data = client.get(
            f"/sessions/{session_id}/metrics/engine_speed/samples", params={"sample_size": 2}
        ).json()

        assert [p["time"] for p in data["points"]] == [0.0, 3.0]
        assert data["stats"]["max"] == 2500.0

    def test_samples_time_range(self, client, uploaded):
        session_id, _ = uploaded

        data = client.get(
            f"/sessions/{session_id}/metrics/engine_speed/samples",
            params={"start": 1.0, "end": 2.0},
        ).json()

        assert [p["value"] for p in data["points"]] == [2000.0, 1500.0]
        assert data["time_range"] == {"start": 1.0, "end": 2.0}

    def test_inverted_time_range(self, client, uploaded):
        session_id, _ = uploaded

        response = client.get(
            f"/sessions/{session_id}/metrics/engine_speed/samples",
            params={"start": 2.0, "end": 1.0},
        )

        assert response.status_code == 400

    def test_moving_average(self, client, uploaded):
        session_id, _ = uploaded

        data = client.get(
            f"/sessions/{session_id}/metrics/engine_speed/samples",
            params={"moving_average": 2},
        ).json()

        assert [p["movingAverage"] for p in data["points"]] == [1000.0, 1500.0, 1750.0, 2000.0]

    @pytest.mark.parametrize("params", [{"sample_size": 1}, {"moving_average": 101}])
    def test_invalid_parameters(self, client, uploaded, params):
        session_id, _ = uploaded

        response = client.get(f"/sessions/{session_id}/metrics/engine_speed/samples", params=params)

        assert response.status_code == 422

    def test_unknown_metric(self, client, uploaded):
        session_id, _ = uploaded

        response = client.get(f"/sessions/{session_id}/metrics/boost_pressure/samples")

        assert response.status_code == 404

    def test_not_ready_session(self, client, session_id):
        _upload(client, session_id, motec_csv_bytes(["Gear"], [""], [[3]]))

        response = client.get(f"/sessions/{session_id}/metrics/gear/samples")

        assert response.status_code == 409

    def test_multi_samples(self, client, uploaded):
        session_id, _ = uploaded

        data = client.get(
            f"/sessions/{session_id}/samples",
            params={"metrics": ["ground_speed", "engine_speed"], "sample_size": 10},
        ).json()

        assert data["metrics"] == ["ground_speed", "engine_speed"]
        assert len(data["rows"]) == 4
        assert data["rows"][3]["time"] == 3.0
        assert data["rows"][3]["engine_speed"] == 2500.0
        assert data["rows"][3]["ground_speed"] == pytest.approx(90.0)


class TestClearAndColumnar:
    """Tests for clearing sessions and the columnar buffer."""

    def test_clear(self, client, uploaded):
        session_id, file_id = uploaded

        response = client.post(f"/sessions/{session_id}/clear")

        assert response.json() == {"session_id": session_id, "cleared": True}
        assert client.get(f"/sessions/{session_id}/metrics").json() == []
        assert client.get(f"/sessions/{session_id}/metrics/ground_speed/samples").status_code == 404

    def test_reprocess_after_clear(self, client, uploaded):
        session_id, file_id = uploaded
        client.post(f"/sessions/{session_id}/clear")

        response = client.post(f"/files/{file_id}/reprocess")

        assert response.status_code == 202
        data = client.get(
            f"/sessions/{session_id}/metrics/ground_speed/samples", params={"sample_size": 10}
        ).json()
        assert data["total_points"] == 4

    def test_reprocess_replaces_rows(self, client, uploaded):
        session_id, file_id = uploaded

        response = client.post(f"/files/{file_id}/reprocess")

        assert response.status_code == 202
        data = client.get(
            f"/sessions/{session_id}/metrics/engine_speed/samples", params={"sample_size": 10}
        ).json()
        assert data["total_points"] == 4
        assert [p["value"] for p in data["points"]] == [1000.0, 2000.0, 1500.0, 2500.0]
        assert client.get(f"/files/{file_id}").json()["row_count"] == 4

    def test_columnar(self, client, uploaded):
        session_id, _ = uploaded

        response = client.get(f"/sessions/{session_id}/columnar")

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/octet-stream"
        store = ColumnarStore.from_bytes(response.content)
        assert store.headers == ["time", "ground_speed", "engine_speed"]
        assert store.row_count == 4

    def test_columnar_unknown_session(self, client):
        assert client.get("/sessions/missing/columnar").status_code == 404

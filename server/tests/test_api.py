"""
Machine Metrics Hub - API Tests

Pytest tests for the HTTP surface, run against an in-memory database.
"""

from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

BASE = 1709251200000
HOUR = 60 * 60 * 1000


@pytest.fixture
def client():
    """Create test client with the lifespan running."""
    from main import app
    with TestClient(app) as c:
        yield c


def submit(client, machine_id, samples, durable=True, **extra):
    return client.post(
        f"/api/machines/{machine_id}/metrics",
        params={"durable": str(durable).lower()},
        json={"metrics": samples, **extra},
    )


class TestHealthEndpoint:

    def test_health_check(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "timestamp" in data
        assert data["version"] == "1.0.0"

    def test_api_root(self, client):
        response = client.get("/api")
        assert response.status_code == 200
        assert response.json()["name"] == "Machine Metrics Hub API"


class TestIngestion:

    def test_durable_submit_then_query(self, client):
        response = submit(client, "m1", [
            {"timestamp": BASE, "cpu_load": 10.0},
            {"timestamp": BASE + 1000, "cpu_load": 20.0, "network_rx_sec": 512.0},
        ], hostname="box-1")
        assert response.status_code == 200
        assert response.json()["count"] == 2

        response = client.get("/api/metrics/range", params={
            "machine_id": "m1", "start": BASE, "end": BASE + HOUR, "granularity": "raw",
        })
        assert response.status_code == 200
        data = response.json()
        assert data["granularity"] == "raw"
        assert data["count"] == 2
        assert [p["value"] for p in data["metrics"]["cpu_load"]] == [10.0, 20.0]
        assert data["metrics"]["network_rx"][0]["value"] is None

    def test_buffered_submit_and_flush(self, client):
        response = submit(client, "m1", [{"timestamp": BASE}, {"timestamp": BASE + 1}], durable=False)
        assert response.status_code == 200
        assert response.json()["durable"] is False

        response = client.post("/api/data/flush")
        assert response.status_code == 200
        assert response.json()["flushed"] == 2

    def test_submit_registers_machine(self, client):
        submit(client, "m1", [{"timestamp": BASE}], hostname="box-1", system_info={"os": "Linux"})

        machine = client.get("/api/machines/m1").json()
        assert machine["hostname"] == "box-1"
        assert machine["metadata"] == {"os": "Linux"}

        info = client.get("/api/machines/m1/info").json()
        assert info["os"] == "Linux"

        listing = client.get("/api/machines").json()
        assert [m["machine_id"] for m in listing["machines"]] == ["m1"]

    def test_failed_durable_submit_leaves_machine_untouched(self, client, monkeypatch):
        client.post("/api/machines/m9/register", json={"display_name": "Nine", "metadata": {"os": "A"}})
        before = client.get("/api/machines/m9").json()

        store = client.app.state.store
        monkeypatch.setattr(store, "insert_samples", AsyncMock(side_effect=RuntimeError("disk I/O error")))
        response = submit(client, "m9", [{"timestamp": BASE}], display_name="Renamed", system_info={"os": "B"})
        assert response.status_code == 500

        after = client.get("/api/machines/m9").json()
        assert after["metadata"] == {"os": "A"}
        assert after["display_name"] == "Nine"
        assert after["last_seen"] == before["last_seen"]
        assert client.get("/api/live/m9").status_code == 404

    def test_invalid_sample_rejects_whole_batch(self, client):
        response = submit(client, "m1", [{"timestamp": BASE}, {"cpu_load": 5.0}])
        assert response.status_code == 422

        response = client.get("/api/metrics/range", params={
            "machine_id": "m1", "start": BASE, "end": BASE + HOUR,
        })
        assert response.json()["count"] == 0

    def test_live_snapshot(self, client):
        submit(client, "m1", [{"timestamp": BASE, "cpu_load": 42.0}], durable=False)
        response = client.get("/api/live/m1")
        assert response.status_code == 200
        assert response.json()["cpu_load"] == 42.0

        assert client.get("/api/live/ghost").status_code == 404


class TestMachines:

    def test_unknown_machine(self, client):
        assert client.get("/api/machines/ghost").status_code == 404
        assert client.get("/api/machines/ghost/info").status_code == 404

    def test_register_and_deactivate(self, client):
        response = client.post("/api/machines/m2/register", json={"display_name": "Builder"})
        assert response.status_code == 200
        assert response.json()["machine"]["display_name"] == "Builder"

        response = client.patch("/api/machines/m2", json={"is_active": False})
        assert response.json()["is_active"] is False

        assert client.get("/api/machines").json()["count"] == 0
        assert client.get("/api/machines", params={"include_inactive": True}).json()["count"] == 1


class TestQueryErrors:

    def test_inverted_range(self, client):
        response = client.get("/api/metrics/range", params={"start": BASE + 1, "end": BASE})
        assert response.status_code == 400

    def test_unknown_granularity(self, client):
        response = client.get("/api/metrics/range", params={
            "start": BASE, "end": BASE + 1, "granularity": "weekly",
        })
        assert response.status_code == 400

    def test_bad_timestamp(self, client):
        response = client.get("/api/metrics/range", params={"start": "yesterday", "end": BASE})
        assert response.status_code == 400

    def test_missing_bounds(self, client):
        assert client.get("/api/metrics/range").status_code == 422

    def test_iso_timestamps(self, client):
        response = client.get("/api/metrics/range", params={
            "start": "2024-03-01T00:00:00Z", "end": "2024-03-01T02:00:00Z",
        })
        assert response.status_code == 200
        data = response.json()
        assert data["start"] == BASE
        assert data["granularity"] == "raw"


class TestExportAndSummary:

    def test_csv_export(self, client):
        submit(client, "m1", [{"timestamp": BASE, "cpu_load": 1.5}])
        response = client.get("/api/metrics/export/csv", params={
            "machine_id": "m1", "start": BASE, "end": BASE + HOUR,
        })
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        lines = response.text.strip().splitlines()
        assert lines[0].startswith("machine_id,timestamp,cpu_load")
        assert len(lines) == 2

    def test_custom_summary(self, client):
        submit(client, "m1", [{"timestamp": BASE + i * 1000, "cpu_load": float(i)} for i in range(1, 5)])
        response = client.get("/api/metrics/summary", params={
            "machine_id": "m1", "period": "custom", "start": BASE, "end": BASE + HOUR,
        })
        assert response.status_code == 200
        data = response.json()
        assert data["row_count"] == 4
        assert data["cpu"]["avg"] == pytest.approx(2.5)
        assert data["cpu"]["max"] == 4.0
        assert data["gpu"] is None

    def test_invalid_period(self, client):
        assert client.get("/api/metrics/summary", params={"period": "1y"}).status_code == 400


class TestDataAdmin:

    def test_retention_roundtrip(self, client):
        assert client.get("/api/data/retention").json() == {"raw": 7, "hourly": 90, "daily": 0}

        response = client.put("/api/data/retention", json={"raw": 3})
        assert response.status_code == 200
        assert response.json()["raw"] == 3

        assert client.put("/api/data/retention", json={"raw": -1}).status_code == 422

    def test_aggregate_and_stats(self, client):
        submit(client, "m1", [{"timestamp": BASE + i * 1000, "cpu_load": 5.0} for i in range(3)])

        response = client.post("/api/data/aggregate", json={
            "machine_id": "m1", "start": BASE, "end": BASE + HOUR, "granularity": "hourly",
        })
        assert response.status_code == 200
        assert response.json()["buckets"] == [BASE]

        stats = client.get("/api/data/stats", params={"machine_id": "m1"}).json()
        assert stats["machines"]["m1"]["raw"]["count"] == 3
        assert stats["machines"]["m1"]["hourly"]["count"] == 1
        assert stats["db_size_bytes"] > 0

    def test_aggregate_rejects_raw(self, client):
        response = client.post("/api/data/aggregate", json={
            "machine_id": "m1", "start": BASE, "end": BASE + HOUR, "granularity": "raw",
        })
        assert response.status_code == 400

    def test_cleanup(self, client):
        submit(client, "m1", [{"timestamp": BASE}])
        response = client.post("/api/data/cleanup", json={"older_than_days": 1, "granularity": "raw"})
        assert response.status_code == 200
        assert response.json()["deleted_count"] == 1

    def test_status(self, client):
        data = client.get("/api/data/status").json()
        assert data["writer"]["is_running"] is True
        assert data["aggregator"]["running"] is False


class TestAuth:

    def test_token_required_when_configured(self, client, monkeypatch):
        from config import settings
        monkeypatch.setattr(settings, "api_token", "s3cret")

        assert client.post("/api/machines/m1/register", json={}).status_code == 401
        assert client.get("/api/data/retention").status_code == 401

        headers = {"Authorization": "Bearer s3cret"}
        assert client.post("/api/machines/m1/register", json={}, headers=headers).status_code == 200

        # Read-only routes stay open
        assert client.get("/api/machines").status_code == 200

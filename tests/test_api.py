"""
Tests for the HTTP front-end.

Tests:
- /init seeding and the fatal path
- /search and /find/{id} envelopes
- Error envelopes for request-scoped failures
- /health, /metrics and request IDs
"""

import random
import signal
from contextlib import asynccontextmanager
from unittest.mock import MagicMock, patch

import pytest
from cassandra import InvalidRequest
from cassandra.cluster import NoHostAvailable
from fastapi.testclient import TestClient

from partition_lookup.api import create_app, terminate_process
from partition_lookup.errors import StoreConnectionError, StoreSchemaError

FULL_KEYS = {
    "partition_id", "secondary_id", "cluster_col_1", "cluster_col_2",
    "data_col_1", "data_col_2", "data_col_3",
}
PARTIAL_KEYS = FULL_KEYS - {"data_col_2", "data_col_3"}


@pytest.fixture
def fatal_handler():
    return MagicMock()


@pytest.fixture
def client(service_config, store_factory, fatal_handler):
    app = create_app(
        service_config,
        store_factory=store_factory,
        fatal_handler=fatal_handler,
        rng=random.Random(9),
    )
    with TestClient(app) as client:
        yield client


@pytest.fixture
def seeded_client(client):
    response = client.get("/init", params={"rows": "5"})
    assert response.status_code == 200
    return client


@pytest.mark.unit
class TestInit:

    def test_seeds_rows(self, client, fake_session, fatal_handler):
        response = client.get("/init", params={"rows": "5"})

        assert response.status_code == 200
        assert response.json() == {"type": "success", "data": []}
        assert len(fake_session.rows["demo.demo"]) == 10
        fatal_handler.assert_not_called()

    def test_post_is_accepted(self, client, fake_session):
        response = client.post("/init?rows=2")

        assert response.status_code == 200
        assert len(fake_session.rows["demo.demo"]) == 4

    def test_failure_is_fatal(self, client, fake_session, fatal_handler):
        fake_session.inject(InvalidRequest("write rejected"), match="INSERT")

        response = client.get("/init", params={"rows": "3"})

        assert response.status_code == 500
        body = response.json()
        assert body["type"] == "error"
        assert "write rejected" in body["message"]
        fatal_handler.assert_called_once()
        assert isinstance(fatal_handler.call_args.args[0], StoreSchemaError)

    def test_terminate_process_sends_sigterm(self):
        with patch("partition_lookup.api.os.kill") as kill:
            terminate_process(RuntimeError("seed failed"))

        kill.assert_called_once()
        assert kill.call_args.args[1] == signal.SIGTERM


@pytest.mark.unit
class TestFind:

    def test_returns_full_records(self, seeded_client):
        body = seeded_client.get("/find/3").json()

        assert body["type"] == "success"
        assert [r["cluster_col_1"] for r in body["data"]] == ["FOO0", "FOO1"]
        for record in body["data"]:
            assert set(record) == FULL_KEYS
            assert record["secondary_id"] == "0000000000003"

    def test_absent_key(self, seeded_client):
        assert seeded_client.get("/find/999").json() == {"type": "success", "data": []}

    def test_malformed_id_means_zero(self, seeded_client):
        body = seeded_client.get("/find/abc").json()

        assert {r["secondary_id"] for r in body["data"]} == {"0000000000000"}

    @pytest.mark.parametrize("raw_id", ["0_3", "\u0663", "99999999999999999999"])
    def test_loosely_numeric_id_means_zero(self, seeded_client, raw_id):
        body = seeded_client.get(f"/find/{raw_id}").json()

        assert body["type"] == "success"
        assert {r["secondary_id"] for r in body["data"]} == {"0000000000000"}

    def test_missing_table_is_an_error_envelope(self, client, fatal_handler):
        response = client.get("/find/1")

        assert response.status_code == 200
        body = response.json()
        assert body["type"] == "error"
        assert "Invalid query" in body["message"]
        assert "data" not in body
        fatal_handler.assert_not_called()

    def test_unreachable_cluster_is_an_error_envelope(self, seeded_client, fake_session):
        fake_session.inject(NoHostAvailable("Unable to complete the operation", {}), match="SELECT", times=10)

        response = seeded_client.get("/find/1")

        assert response.status_code == 200
        assert response.json()["type"] == "error"
        assert "No hosts available" in response.json()["message"]


@pytest.mark.unit
class TestSearch:

    def test_explicit_ids(self, seeded_client):
        body = seeded_client.get("/search", params={"ids": "1,2"}).json()

        assert body["type"] == "success"
        assert len(body["data"]) == 4
        for record in body["data"]:
            assert set(record) == PARTIAL_KEYS

    def test_random_ids(self, seeded_client, fake_session):
        body = seeded_client.get("/search").json()

        assert body["type"] == "success"
        assert isinstance(body["data"], list)
        assert len(fake_session.executed[-1].parameters[1]) == 10

    def test_invalid_ids(self, seeded_client):
        response = seeded_client.get("/search", params={"ids": "1,two"})

        assert response.status_code == 200
        assert response.json()["type"] == "error"
        assert "invalid id" in response.json()["message"]


@pytest.mark.unit
class TestOperationalEndpoints:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_health_unhealthy(self, client, fake_session):
        fake_session.inject(NoHostAvailable("down", {}), match="SELECT now()")

        response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "unhealthy"

    def test_metrics(self, seeded_client):
        seeded_client.get("/find/1")

        response = seeded_client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert 'partition_lookup_queries_total{operation="find_by_id"} 1' in response.text
        assert 'partition_lookup_rows_total{operation="seed"} 10' in response.text

    def test_request_id_is_echoed(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_request_id_is_generated(self, client):
        assert len(client.get("/health").headers["X-Request-ID"]) == 32


@pytest.mark.unit
class TestLifespan:

    def test_unreachable_cluster_fails_startup(self, service_config):
        @asynccontextmanager
        async def unreachable(config):
            raise StoreConnectionError(original_error=NoHostAvailable("Unable to connect", {}))
            yield

        app = create_app(service_config, store_factory=unreachable)

        with pytest.raises(StoreConnectionError):
            with TestClient(app):
                pass

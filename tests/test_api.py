from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

import main
from flightfinder.cache.storage import MemoryStorage, RedisStorage
from flightfinder.config import settings
from flightfinder.infrastructure.resilience import CircuitState
from flightfinder.search.service import FlightSearchService

api = main.app.app  # FastAPI instance behind the observability middleware

PARAMS = {
    "origins": ["JFK"],
    "destinations": ["LAX"],
    "departureDateRange": "2023-06-01",
    "returnDateRange": "2023-06-08",
    "numAdults": 1,
}


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(settings, "CACHE_BACKEND", "memory")
    monkeypatch.setattr(settings, "AMADEUS_CLIENT_ID", None)
    monkeypatch.setattr(settings, "AMADEUS_CLIENT_SECRET", None)
    monkeypatch.setattr(settings, "TZ", "UTC")
    with TestClient(main.app) as c:
        yield c


@pytest.fixture
def backend(client):
    fake = MagicMock()
    fake.search_flights.side_effect = lambda q: {"data": [{"route": q.route}]}
    fake.search_airports.return_value = [{"code": "LHR", "name": "HEATHROW", "type": "AIRPORT"}]
    api.state.search = FlightSearchService(fake, api.state.caches, breaker=api.state.breaker)
    return fake


def test_root_and_health(client):
    assert client.get("/").json()["service"] == "Flight Finder"

    health = client.get("/health").json()
    assert health["status"] == "healthy"
    assert health["search_backend"] is False
    assert health["circuit"] == "closed"


def test_generate_queries(client):
    resp = client.post("/queries", json=PARAMS)

    assert resp.status_code == 200
    body = resp.json()
    assert body["count"] == 1
    assert body["queries"][0] == {
        "origin": "JFK",
        "dest": "LAX",
        "depDate": "2023-06-01",
        "retDate": "2023-06-08",
        "numAdults": 1,
        "numChildren": 0,
        "numInfants": 0,
        "cabinClass": "economy",
    }


def test_generate_queries_bad_input(client):
    resp = client.post("/queries", json=dict(PARAMS, cabinClass="invalid"))

    assert resp.status_code == 400
    assert resp.json() == {
        "error": "Invalid cabin class: invalid",
        "field": "cabinClass",
        "code": "invalid_input",
    }


def test_generate_queries_unsatisfiable(client):
    resp = client.post("/queries", json=dict(PARAMS, destinations=["JFK"]))
    assert resp.status_code == 400
    assert resp.json()["code"] == "no_combinations"


def test_search_without_backend(client):
    resp = client.post("/search", json=PARAMS)
    assert resp.status_code == 503


def test_search_with_backend(client, backend):
    first = client.post("/search", json=PARAMS).json()
    second = client.post("/search", json=PARAMS).json()

    assert first["count"] == 1
    assert first["failed"] == 0
    assert first["results"][0]["results"] == {"data": [{"route": "JFK-LAX"}]}
    assert second["results"][0]["cached"] is True
    assert backend.search_flights.call_count == 1


def test_search_rate_limited(client, monkeypatch):
    monkeypatch.setattr(settings, "RATE_LIMIT_REQUESTS", 1)

    client.post("/search", json=PARAMS)
    resp = client.post("/search", json=PARAMS)

    assert resp.status_code == 429
    assert int(resp.headers["Retry-After"]) > 0


def test_clear_cache(client, backend):
    client.post("/search", json=PARAMS)
    assert api.state.caches.results.size() == 1

    resp = client.delete("/cache/results")

    assert resp.status_code == 200
    assert api.state.caches.results.size() == 0
    assert client.delete("/cache/bogus").status_code == 404


def test_metrics_include_cache_stats(client):
    client.post("/queries", json=PARAMS)
    body = client.get("/metrics").json()

    assert set(body["cache"]) == {"results", "queries", "airports"}
    assert body["circuit_breaker"]["state"] == "closed"
    names = {c["name"] for c in body["counters"]}
    assert "requests_total" in names


def test_circuit_reset(client):
    api.state.breaker.failure_count = 3
    resp = client.post("/admin/circuit/reset")
    assert resp.json() == {"status": "reset", "breaker": "amadeus_api"}
    assert api.state.breaker.failure_count == 0


def test_request_id_header(client):
    resp = client.get("/health", headers={"x-request-id": "abc-123"})
    assert resp.headers["x-request-id"] == "abc-123"
    assert client.get("/health").headers["x-request-id"]


def test_airport_lookup_is_cached(client, backend):
    first = client.get("/airports", params={"keyword": "London"})
    second = client.get("/airports", params={"keyword": " london "})

    assert first.status_code == 200
    assert first.json() == {"count": 1, "locations": [{"code": "LHR", "name": "HEATHROW", "type": "AIRPORT"}]}
    assert second.json() == first.json()
    backend.search_airports.assert_called_once_with("london")
    assert api.state.caches.airports.size() == 1


def test_airport_lookup_errors(client, backend):
    assert client.get("/airports", params={"keyword": "L"}).status_code == 422

    backend.search_airports.side_effect = RuntimeError("locations down")
    assert client.get("/airports", params={"keyword": "Paris"}).status_code == 502

    api.state.breaker.state = CircuitState.OPEN
    api.state.breaker.last_failure_time = 10 ** 12
    assert client.get("/airports", params={"keyword": "Rome"}).status_code == 503


def test_airport_lookup_without_backend(client):
    assert client.get("/airports", params={"keyword": "London"}).status_code == 503


def test_rate_limiter_follows_storage_backend():
    redis_client = MagicMock()
    assert main.build_rate_limiter(RedisStorage(redis_client)).redis_client is redis_client
    assert main.build_rate_limiter(MemoryStorage()).redis_client is None


def test_redis_storage_backs_the_rate_limit(monkeypatch):
    redis_client = MagicMock()
    redis_client.pipeline.return_value.execute.return_value = [0, 1, 1, True]
    monkeypatch.setattr(main, "create_storage", lambda cfg: RedisStorage(redis_client))
    monkeypatch.setattr(settings, "AMADEUS_CLIENT_ID", None)

    with TestClient(main.app) as c:
        assert c.post("/search", json=PARAMS).status_code == 503

    redis_client.pipeline.return_value.zadd.assert_called_once()
    assert redis_client.pipeline.return_value.zremrangebyscore.call_args.args[0] == "rate_limit:ip:testclient"

"""
test_api.py - HTTP endpoint tests for api.py using FastAPI's TestClient.

Usage:
    pytest test_api.py -v
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

import api


@pytest.fixture
def client(store):
    api.set_store(store)
    try:
        yield TestClient(api.app)
    finally:
        api.set_store(None)


def _error(response) -> dict:
    body = response.json()
    assert body["success"] is False
    return body["error"]


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"success": True, "data": {"status": "ok", "wines": 5}}


# =============================================================================
# GET /wines/search
# =============================================================================

class TestSearch:
    def test_ranked_results(self, client):
        response = client.get("/wines/search", params={"q": "Opus One"})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["query_normalized"] == "opus one"
        assert data["total_count"] == 2
        assert [item["wine"]["id"] for item in data["results"]] == ["opus-2019", "opus-2018"]
        assert data["results"][0]["match_type"] == "exact"
        assert data["results"][0]["match_confidence"] == 1.0

    def test_filters(self, client):
        data = client.get("/wines/search", params={"q": "opus one", "min_score": 97}).json()["data"]
        assert [item["wine"]["id"] for item in data["results"]] == ["opus-2019"]

        data = client.get("/wines/search", params={"q": "opus one", "vintage": 2018}).json()["data"]
        assert [item["wine"]["id"] for item in data["results"]] == ["opus-2018"]

        data = client.get("/wines/search", params={"q": "opus one", "color": "white"}).json()["data"]
        assert data["results"] == []

    def test_limit_is_clamped(self, client):
        data = client.get("/wines/search", params={"q": "opus one", "limit": 0}).json()["data"]
        assert data["total_count"] == 1

        response = client.get("/wines/search", params={"q": "opus one", "limit": 500})
        assert response.status_code == 200
        assert response.json()["data"]["total_count"] == 2

    def test_exact_only(self, client):
        data = client.get(
            "/wines/search",
            params={"q": "Opus One Napa Valley 2018", "fuzzy": "false"},
        ).json()["data"]
        assert [item["wine"]["id"] for item in data["results"]] == ["opus-2018"]
        assert data["results"][0]["match_type"] == "exact"

        data = client.get("/wines/search", params={"q": "Opus Onne", "fuzzy": "false"}).json()["data"]
        assert data["results"] == []

    @pytest.mark.parametrize("params", [{}, {"q": "   "}])
    def test_query_is_required(self, client, params):
        response = client.get("/wines/search", params=params)
        assert response.status_code == 400
        assert _error(response) == {"code": "VALIDATION_ERROR", "message": 'Query parameter "q" is required'}

    def test_unknown_color(self, client):
        response = client.get("/wines/search", params={"q": "opus one", "color": "blue"})
        assert response.status_code == 400
        assert _error(response)["code"] == "VALIDATION_ERROR"

    def test_store_failure_is_server_error(self, client, monkeypatch):
        def explode(*args, **kwargs):
            raise RuntimeError("index corrupted")

        monkeypatch.setattr(api.get_store(), "search", explode)
        response = client.get("/wines/search", params={"q": "opus one"})
        assert response.status_code == 500
        assert _error(response) == {"code": "SERVER_ERROR", "message": "Search failed"}


# =============================================================================
# POST /wines/batch-match
# =============================================================================

class TestBatchMatch:
    def test_matches_and_rate(self, client):
        response = client.post(
            "/wines/batch-match",
            json={"queries": ["opus one napa valley 2019", "house red by the glass"]},
        )

        assert response.status_code == 200
        data = response.json()["data"]
        first, second = data["matches"]
        assert first["matched"] is True
        assert first["wine"]["id"] == "opus-2019"
        assert first["confidence"] == pytest.approx(1.0)
        assert second["query"] == "house red by the glass"
        assert second["matched"] is False
        assert second["wine"] is None
        assert data["match_rate"] == pytest.approx(0.5)

    def test_threshold_option(self, client):
        data = client.post(
            "/wines/batch-match",
            json={"queries": ["opus one"], "options": {"confidence_threshold": 1.01}},
        ).json()["data"]
        assert data["matches"][0]["matched"] is False
        assert data["match_rate"] == 0.0

    @pytest.mark.parametrize("payload", [{}, {"queries": []}, {"queries": "opus one"}])
    def test_queries_required(self, client, payload):
        response = client.post("/wines/batch-match", json=payload)
        assert response.status_code == 400
        assert _error(response)["message"] == "queries array is required"

    def test_too_many_queries(self, client):
        response = client.post("/wines/batch-match", json={"queries": ["opus one"] * 101})
        assert response.status_code == 400
        assert _error(response)["message"] == "Maximum 100 queries per request"

    def test_bad_threshold(self, client):
        response = client.post(
            "/wines/batch-match",
            json={"queries": ["opus one"], "options": {"confidence_threshold": "high"}},
        )
        assert response.status_code == 400


# =============================================================================
# GET /wines/{wine_id}
# =============================================================================

class TestGetWine:
    def test_wine_with_related_vintages(self, client):
        response = client.get("/wines/opus-2019")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["wine"]["producer"] == "Opus One"
        assert data["wine"]["grape_varieties"][0]["name"] == "Cabernet Sauvignon"
        assert data["related_vintages"] == [{"id": "opus-2018", "vintage": 2018, "score": 96}]

    def test_single_vintage_has_no_related(self, client):
        data = client.get("/wines/margaux-2015").json()["data"]
        assert data["related_vintages"] == []

    def test_not_found(self, client):
        response = client.get("/wines/does-not-exist")
        assert response.status_code == 404
        assert _error(response) == {"code": "NOT_FOUND", "message": "Wine not found"}

"""API integration tests using httpx against the ASGI app."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from oracle.api.dependencies import get_backend_set, get_transports
from oracle.engine.schemas import BackendTier, PickStatus
from oracle.repositories import picks_orm
from tests.conftest import FakeTransport, pick_payload


@pytest.fixture
def analysis_backends(api_app, make_backend_set):
    """Two fake backends answering UP, wired into the app."""
    backends = make_backend_set(("gpt4", BackendTier.LARGE), ("gemini", BackendTier.MEDIUM))
    transports = {
        "gpt4": FakeTransport(pick_payload(confidence=80)),
        "gemini": FakeTransport(pick_payload(confidence=60)),
    }
    api_app.dependency_overrides[get_backend_set] = lambda: backends
    api_app.dependency_overrides[get_transports] = lambda: transports
    return transports


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, async_client):
        response = await async_client.get("/api/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["checks"] == {"database": True, "scheduler": False}


class TestAnalyze:
    @pytest.mark.asyncio
    async def test_analyze_builds_consensus(self, async_client, analysis_backends):
        response = await async_client.post("/api/analyze", json={"symbol": " aapl "})

        assert response.status_code == 200
        data = response.json()
        assert data["symbol"] == "AAPL"
        assert {p["backend_id"] for p in data["picks"]} == {"gpt4", "gemini"}
        assert data["consensus"]["combination_key"] == "gemini+gpt4"
        assert data["consensus"]["consensus_strength"] == "STRONG"
        assert data["failed_backends"] == []

        consensus = await async_client.get("/api/consensus", params={"symbol": "AAPL"})
        assert consensus.status_code == 200
        assert consensus.json()["id"] == data["consensus"]["id"]

        picks = await async_client.get("/api/picks", params={"symbol": "aapl"})
        assert len(picks.json()) == 2

    @pytest.mark.asyncio
    async def test_analyze_backend_subset(self, async_client, analysis_backends):
        response = await async_client.post(
            "/api/analyze", json={"symbol": "AAPL", "backends": ["gemini"]}
        )

        assert response.status_code == 200
        assert [p["backend_id"] for p in response.json()["picks"]] == ["gemini"]
        assert response.json()["consensus"] is None
        assert analysis_backends["gpt4"].prompts == []

    @pytest.mark.asyncio
    async def test_unknown_backend_is_bad_request(self, async_client, analysis_backends):
        response = await async_client.post(
            "/api/analyze", json={"symbol": "AAPL", "backends": ["nope"]}
        )

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "BAD_REQUEST"
        assert body["status"] == 400
        assert "nope" in body["message"]

    @pytest.mark.asyncio
    async def test_unknown_symbol_is_unavailable(self, async_client, analysis_backends):
        response = await async_client.post("/api/analyze", json={"symbol": "ZZZZ"})

        assert response.status_code == 503
        assert "ZZZZ" in response.json()["message"]

    @pytest.mark.asyncio
    async def test_empty_symbol_rejected(self, async_client, analysis_backends):
        response = await async_client.post("/api/analyze", json={"symbol": ""})

        assert response.status_code == 422


class TestPicks:
    @pytest.mark.asyncio
    async def test_get_pick_and_filters(self, async_client, make_pick):
        win = make_pick(status=PickStatus.WIN, closed_at=datetime.now(UTC))
        pending = make_pick(backend_id="claude", symbol="MSFT")
        await picks_orm.insert_picks([win, pending])

        one = await async_client.get(f"/api/picks/{win.id}")
        assert one.status_code == 200
        assert one.json()["status"] == "WIN"

        settled = await async_client.get("/api/picks", params={"status": "WIN"})
        assert [p["id"] for p in settled.json()] == [win.id]

        by_backend = await async_client.get("/api/picks", params={"backend": "claude"})
        assert [p["id"] for p in by_backend.json()] == [pending.id]

    @pytest.mark.asyncio
    async def test_missing_pick(self, async_client):
        response = await async_client.get("/api/picks/missing")

        assert response.status_code == 404
        assert response.json() == {
            "error": "NOT_FOUND",
            "message": "Pick missing not found",
            "status": 404,
        }

    @pytest.mark.asyncio
    async def test_no_recent_consensus(self, async_client):
        response = await async_client.get("/api/consensus", params={"symbol": "AAPL"})

        assert response.status_code == 404


class TestOutcomes:
    @pytest.mark.asyncio
    async def test_resolve_expired_and_pending(self, async_client, make_pick, market_data):
        market_data.prices["AAPL"] = 111.0
        due = make_pick()
        fresh = make_pick(created_at=datetime.now(UTC) - timedelta(hours=1), target_price=120.0)
        await picks_orm.insert_picks([due, fresh])

        pending = (await async_client.get("/api/pending")).json()
        assert pending["pending"] == 2
        assert pending["ready_to_resolve"] == 1

        response = await async_client.post("/api/resolve-expired")
        assert response.status_code == 200
        summary = response.json()
        assert (summary["processed"], summary["wins"]) == (1, 1)

        again = (await async_client.post("/api/resolve-expired")).json()
        assert again["processed"] == 0

    @pytest.mark.asyncio
    async def test_force_resolve(self, async_client, make_pick):
        pick = make_pick(created_at=datetime.now(UTC) - timedelta(hours=1))
        await picks_orm.insert_picks([pick])

        response = await async_client.post(f"/api/picks/{pick.id}/resolve")

        assert response.status_code == 200
        # AAPL still at 100: flat at expiry is a loss for an UP call
        assert response.json()["status"] == "LOSS"

    @pytest.mark.asyncio
    async def test_force_resolve_missing(self, async_client):
        response = await async_client.post("/api/picks/missing/resolve")

        assert response.status_code == 404


class TestCalibrationRoutes:
    @pytest.mark.asyncio
    async def test_calibrate_all_without_data(self, async_client):
        response = await async_client.post("/api/calibrate", json={"backend_id": "all"})

        assert response.status_code == 200
        summary = response.json()
        assert summary["calibrated"] == 0
        assert set(summary["results"].values()) <= {"skipped"}

    @pytest.mark.asyncio
    async def test_calibrate_one_backend(self, async_client, make_pick):
        await picks_orm.insert_picks(
            [
                make_pick(status=PickStatus.WIN, closed_at=datetime.now(UTC), actual_return=0.1)
                for _ in range(5)
            ]
        )

        response = await async_client.post("/api/calibrate", json={"backend_id": "gpt4"})
        assert response.json()["results"] == {"gpt4": "calibrated"}

        latest = await async_client.get("/api/calibration", params={"backend": "gpt4"})
        assert latest.status_code == 200
        assert latest.json()["win_rate"] == 1.0

        history = await async_client.get("/api/calibration/history", params={"backend": "gpt4"})
        assert len(history.json()) == 1

        report = await async_client.get("/api/calibration/report")
        assert report.headers["content-type"].startswith("text/plain")
        assert "## GPT4" in report.text

    @pytest.mark.asyncio
    async def test_missing_calibration(self, async_client):
        response = await async_client.get("/api/calibration", params={"backend": "gpt4"})

        assert response.status_code == 404
        assert response.json()["error"] == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_combinations_and_factors_empty(self, async_client):
        combos = await async_client.get("/api/combinations", params={"min_agreed": 5})
        assert combos.json() == []

        factors = await async_client.get("/api/factors", params={"backend": "gpt4"})
        assert factors.status_code == 200
        assert factors.json()["backend_id"] == "gpt4"
        assert factors.json()["avoid_factors"] == []

"""HTTP-level tests for the sync and trend routes."""

from datetime import datetime, timedelta, timezone

import httpx
import pytest
import pytest_asyncio
from jose import jwt

from config import get_settings
from conftest import StubGraph, add_account
from database import get_db
from main import app
from routers.deps import get_graph_client
from services.days import today_utc
from services.freshness import InMemoryTTLCache
from services.metric_store import MetricStore, SnapshotRow

settings = get_settings()


def session_token(user_id: str = "user-1") -> str:
    payload = {
        "sub": user_id,
        "aud": settings.jwt_audience,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=5),
    }
    return jwt.encode(payload, settings.session_jwt_secret, algorithm=settings.jwt_algorithm)


def auth_headers(user_id: str = "user-1") -> dict:
    return {"Authorization": f"Bearer {session_token(user_id)}"}


def cron_headers() -> dict:
    return {"X-Cron-Secret": settings.cron_secret}


class ExplodingGraph(StubGraph):
    async def list_media(self, ig_user_id, token, cutoff_day, max_items=300):
        raise RuntimeError("listing exploded")


@pytest.fixture
def graph() -> StubGraph:
    return StubGraph()


def _override(db_session, graph_client):
    async def override_get_db():
        yield db_session

    async def override_get_graph_client():
        yield graph_client

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_graph_client] = override_get_graph_client
    app.state.trend_cache = InMemoryTTLCache()


@pytest_asyncio.fixture
async def client(session, graph):
    _override(session, graph)
    transport = httpx.ASGITransport(app=app, raise_app_exceptions=False)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client_without_snapshots(session_without_snapshots, graph):
    _override(session_without_snapshots, graph)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client) -> None:
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "service": "creator-insights"}


class TestSyncRoutes:
    @pytest.mark.asyncio
    async def test_requires_cron_secret(self, client) -> None:
        response = await client.post("/sync/media")

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_media_sync_reports_in_camel_case(self, client, session) -> None:
        await add_account(session)

        response = await client.post("/sync/media", json={"lookbackDays": 7}, headers=cron_headers())

        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is True
        assert body["lookbackDays"] == 7
        assert set(body["summary"]) == {"mediaFetched", "mediaUpserted", "daysRecomputed", "rowsAggregated"}
        assert body["diagnostics"]["perItemInsightFailures"] == 0
        assert body["accounts"][0]["accountId"] == "acct-1"

    @pytest.mark.asyncio
    async def test_media_sync_without_body_uses_defaults(self, client) -> None:
        response = await client.post("/sync/media", headers=cron_headers())

        assert response.status_code == 200
        assert response.json()["lookbackDays"] == 14

    @pytest.mark.asyncio
    async def test_account_insights_accepts_bearer_secret(self, client, session) -> None:
        await add_account(session)

        response = await client.post(
            "/sync/account-insights",
            headers={"Authorization": f"Bearer {settings.cron_secret}"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 1
        assert body["accounts"][0]["skippedReason"] == "no_completed_day"

    @pytest.mark.asyncio
    async def test_missing_table_is_a_server_error(self, client_without_snapshots) -> None:
        response = await client_without_snapshots.post("/sync/account-insights", headers=cron_headers())

        assert response.status_code == 500
        assert response.json()["error"] == "missing_table_account_daily_snapshot"

    @pytest.mark.asyncio
    async def test_backfill_unknown_account(self, client) -> None:
        response = await client.post(
            "/sync/account-insights/backfill",
            json={"accountId": "nobody"},
            headers=cron_headers(),
        )

        assert response.status_code == 200
        assert response.json()["ok"] is False
        assert response.json()["error"] == "missing_credential"

    @pytest.mark.asyncio
    async def test_diag_never_echoes_secret(self, client) -> None:
        response = await client.get("/sync/diag", headers=cron_headers())

        assert response.status_code == 200
        body = response.json()
        assert body["authorizedVia"] == "x-cron-secret"
        assert body["cronSecretConfigured"] is True
        assert settings.cron_secret not in response.text

    @pytest.mark.asyncio
    async def test_unexpected_error_returns_server_error(self, session) -> None:
        await add_account(session)
        _override(session, ExplodingGraph())
        transport = httpx.ASGITransport(app=app, raise_app_exceptions=False)
        try:
            async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
                response = await client.post("/sync/media", headers=cron_headers())
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 500
        assert response.json() == {"ok": False, "error": "server_error", "message": "listing exploded"}


class TestTrendRoute:
    @pytest.mark.asyncio
    async def test_requires_session(self, client) -> None:
        response = await client.get("/trend")

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_unknown_account(self, client) -> None:
        response = await client.get("/trend", headers=auth_headers("stranger"))

        assert response.status_code == 200
        assert response.json()["ok"] is False
        assert response.json()["error"] == "account_not_found"

    @pytest.mark.asyncio
    async def test_series_with_etag_and_not_modified(self, client, session) -> None:
        await add_account(session)
        yesterday = today_utc() - timedelta(days=1)
        await MetricStore(session).upsert_account_snapshot(
            SnapshotRow(ig_user_id=1784, page_id=555, day=yesterday, reach=321)
        )

        response = await client.get("/trend?days=30", headers=auth_headers())

        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is True
        assert body["days"] == 30
        assert len(body["points"]) == 30
        assert body["points"][-2] == {
            "date": yesterday.isoformat(),
            "reach": 321,
            "impressions": None,
            "interactions": None,
            "engagedAccounts": None,
            "followers": None,
        }
        assert body["kpi"]["reach"]["last"] == 321
        etag = response.headers["ETag"]
        assert etag.startswith('W/"')
        assert response.headers["Cache-Control"] == "private, no-cache"

        cached = await client.get("/trend?days=30", headers={**auth_headers(), "If-None-Match": etag})

        assert cached.status_code == 304
        assert cached.headers["ETag"] == etag

    @pytest.mark.asyncio
    async def test_invalid_days_falls_back_to_default(self, client, session) -> None:
        await add_account(session)

        response = await client.get("/trend?days=abc", headers=auth_headers())

        assert response.json()["days"] == 90
        assert len(response.json()["points"]) == 90

    @pytest.mark.asyncio
    async def test_account_header_selects_account(self, client, session) -> None:
        await add_account(session, account_id="first", is_active=True)
        await add_account(session, account_id="second", is_active=False, ig_user_id=42, page_id=43)

        response = await client.get(
            "/trend?days=7", headers={**auth_headers(), "X-IG-Account-Id": "second"}
        )

        assert response.json()["accountId"] == "second"

    @pytest.mark.asyncio
    async def test_missing_snapshot_table_is_a_service_error(
        self, client_without_snapshots, session_without_snapshots
    ) -> None:
        await add_account(session_without_snapshots)

        response = await client_without_snapshots.get("/trend?days=7", headers=auth_headers())

        assert response.status_code == 200
        assert response.json()["ok"] is False
        assert response.json()["error"] == "service_error"
        assert "ETag" not in response.headers
        assert len(app.state.trend_cache) == 0

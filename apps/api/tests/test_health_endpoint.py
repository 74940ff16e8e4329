import httpx
import pytest
from httpx import AsyncClient

from rac_rewards_api.core.settings import settings


@pytest.mark.asyncio
async def test_readyz_reports_component_statuses(app_with_db, monkeypatch) -> None:
    app, _ = app_with_db
    monkeypatch.setattr(settings, "ownership_ledger_url", None)

    async with AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/api/v1/readyz")

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "degraded"
    components = payload["components"]
    assert components["database"]["status"] == "ready"
    assert components["ownership_ledger"]["status"] == "disabled"
    assert components["notifications"]["status"] in {"ready", "disabled"}


@pytest.mark.asyncio
async def test_readyz_is_ready_with_ledger_configured(app_with_db, publish_type, monkeypatch) -> None:
    app, session_factory = app_with_db
    await publish_type(session_factory)
    monkeypatch.setattr(settings, "ownership_ledger_url", "https://ledger.test")

    async with AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/api/v1/readyz")

    assert response.json()["status"] == "ready"
    assert response.json()["components"]["ownership_ledger"]["status"] == "ready"
    assert response.json()["components"]["catalog"]["detail"] == "1 active membership types"


@pytest.mark.asyncio
async def test_healthz_reports_version(app_with_db) -> None:
    app, _ = app_with_db

    async with AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        root = await client.get("/healthz")
        versioned = await client.get("/api/v1/healthz")

    assert root.json()["status"] == "ok"
    assert root.json()["version"] == "0.1.0"
    assert versioned.json() == {"status": "ok"}

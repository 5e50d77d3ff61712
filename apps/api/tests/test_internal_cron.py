from datetime import timedelta

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from config import settings
from database import get_db
from main import app
from services.billing_time import utcnow
from services.session_token import create_session_token


CRON_KEY = "cron-shared-secret-value"


@pytest_asyncio.fixture
async def cron_client(session_maker):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.pop(get_db, None)


@pytest.mark.asyncio
async def test_cron_requires_configured_key(cron_client, monkeypatch):
    monkeypatch.setattr(settings, "INTERNAL_API_KEY", "")
    response = await cron_client.post("/internal/cron/generate-invoices", headers={"Authorization": "Bearer anything"})
    assert response.status_code == 500


@pytest.mark.asyncio
async def test_cron_rejects_wrong_key(cron_client, monkeypatch):
    monkeypatch.setattr(settings, "INTERNAL_API_KEY", CRON_KEY)

    missing = await cron_client.post("/internal/cron/generate-invoices")
    assert missing.status_code == 401

    wrong = await cron_client.post("/internal/cron/generate-invoices", headers={"Authorization": "Bearer nope"})
    assert wrong.status_code == 401


@pytest.mark.asyncio
async def test_cron_generates_for_every_active_client(cron_client, monkeypatch, make_client, make_billed_usage):
    monkeypatch.setattr(settings, "INTERNAL_API_KEY", CRON_KEY)
    established = await make_client("OLDCO", allow_overdraft=True, created_at=utcnow() - timedelta(days=90))
    await make_billed_usage(
        established,
        count=3,
        credits_per_session=10,
        billed_at=utcnow() - timedelta(days=70),
    )
    await make_client("NEWCO", created_at=utcnow())

    response = await cron_client.post(
        "/internal/cron/generate-invoices",
        headers={"Authorization": f"Bearer {CRON_KEY}"},
    )

    assert response.status_code == 200
    results = response.json()["results"]
    assert results["success"] == 1
    assert results["skipped"] == 1
    assert results["failed"] == 0
    assert results["errors"] == []

    invoices = await cron_client.get(
        f"/admin/clients/{established.id}/invoices",
        headers={"Authorization": f"Bearer {create_session_token('admin-1')['token']}"},
    )
    assert invoices.status_code == 200
    generated = invoices.json()["invoices"]
    assert len(generated) == 1
    assert generated[0]["period_end"] == results["end_date"]
    assert generated[0]["generated_by"] == "cron"
    assert generated[0]["amount_due_credits"] == 30

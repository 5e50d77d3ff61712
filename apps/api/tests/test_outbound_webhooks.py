import asyncio
import json
from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from sqlalchemy.future import select

from config import settings
from models.client_product_config import ClientProductConfig
from models.tenant_billing_period import TenantBillingPeriod
from models.verification_session import VerificationSession
from services.crypto import encrypt_secret
from services.errors import ConflictError, NotFoundError, ValidationError
from services.signature import verify_signature
from services.webhook_queue import retry_intervals
from services.webhooks import (
    deliver_session_webhook,
    dispatch_webhook,
    list_tenant_billing_periods,
    mark_tenant_period_paid,
    redeliver_session_webhook,
    schedule_session_webhook,
)


def _recording_client(captured, status_code=200):
    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(status_code, json={"ok": status_code < 300})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_dispatch_signs_body_and_sets_headers():
    captured = []
    async with _recording_client(captured) as client:
        result = await dispatch_webhook(
            "https://acme.example/hooks",
            {"event": "verification.session.completed", "amount": Decimal("20.00"), "day": date(2026, 10, 1)},
            secret="whsec_acme",
            event_type="verification.session.completed",
            client=client,
        )

    assert result.delivered is True
    assert result.status_code == 200
    request = captured[0]
    assert request.headers["X-Event-Type"] == "verification.session.completed"
    assert json.loads(request.content) == {
        "event": "verification.session.completed",
        "amount": "20.00",
        "day": "2026-10-01",
    }
    verify_signature(
        request.content,
        request.headers["X-Webhook-Signature"],
        request.headers["X-Webhook-Timestamp"],
        "whsec_acme",
    )


@pytest.mark.asyncio
async def test_dispatch_reports_http_and_transport_failures():
    captured = []
    async with _recording_client(captured, status_code=503) as client:
        failed = await dispatch_webhook("https://acme.example/hooks", {}, secret="s", event_type="x", client=client)
    assert (failed.delivered, failed.status_code, failed.error) == (False, 503, "HTTP 503")

    def refuse(request):
        raise httpx.ConnectError("connection refused")

    async with httpx.AsyncClient(transport=httpx.MockTransport(refuse)) as client:
        unreachable = await dispatch_webhook("https://acme.example/hooks", {}, secret="s", event_type="x", client=client)
    assert unreachable.delivered is False
    assert unreachable.error == "connection refused"


@pytest.mark.asyncio
async def test_deliver_session_webhook_records_attempts(db, session_maker, make_client, make_session, monkeypatch):
    monkeypatch.setattr(settings, "OUTBOUND_WEBHOOK_SECRET", "global-secret")
    client = await make_client(credits=10)
    session = await make_session(
        client,
        status="completed",
        webhook_url="https://acme.example/kyc",
        metadata={"tenant_id": "tenant-42"},
    )

    captured = []
    async with _recording_client(captured, status_code=500) as http:
        failed = await deliver_session_webhook(session.id, client=http)
    async with _recording_client(captured) as http:
        delivered = await deliver_session_webhook(session.id, client=http)

    assert failed.delivered is False
    assert delivered.delivered is True
    body = json.loads(captured[-1].content)
    assert body["event"] == "verification.session.completed"
    assert body["session_id"] == session.id
    assert body["tenant_id"] == "tenant-42"
    verify_signature(
        captured[-1].content,
        captured[-1].headers["X-Webhook-Signature"],
        captured[-1].headers["X-Webhook-Timestamp"],
        "global-secret",
    )

    async with session_maker() as check:
        stored = await check.get(VerificationSession, session.id)
    assert stored.webhook_attempts == 2
    assert stored.webhook_delivered is True
    assert stored.webhook_last_error is None


@pytest.mark.asyncio
async def test_client_secret_overrides_global_secret(db, make_client, make_session, monkeypatch):
    monkeypatch.setattr(settings, "OUTBOUND_WEBHOOK_SECRET", "global-secret")
    client = await make_client(credits=10, webhook_url="https://acme.example/config-hook")

    config = (
        await db.execute(select(ClientProductConfig).where(ClientProductConfig.client_id == client.id))
    ).scalar_one()
    config.webhook_secret_encrypted = encrypt_secret("client-secret")
    await db.commit()
    session = await make_session(client, status="processing")

    captured = []
    async with _recording_client(captured) as http:
        await deliver_session_webhook(session.id, client=http)

    request = captured[0]
    assert str(request.url) == "https://acme.example/config-hook"
    verify_signature(
        request.content,
        request.headers["X-Webhook-Signature"],
        request.headers["X-Webhook-Timestamp"],
        "client-secret",
    )


@pytest.mark.asyncio
async def test_redeliver_requires_session_and_url(db, make_client, make_session):
    client = await make_client(credits=10)
    session = await make_session(client)

    with pytest.raises(NotFoundError):
        await redeliver_session_webhook("missing", db)
    with pytest.raises(ValidationError):
        await redeliver_session_webhook(session.id, db)


@pytest.mark.asyncio
async def test_schedule_prefers_queue():
    job = MagicMock(id="webhook:s-1:abc")
    with patch("services.webhooks.enqueue_session_webhook", return_value=job) as enqueue:
        assert schedule_session_webhook("s-1") == "queued"
    enqueue.assert_called_once_with("s-1")


@pytest.mark.asyncio
async def test_schedule_falls_back_to_in_process_delivery():
    deliver = AsyncMock(return_value=None)
    with patch("services.webhooks.enqueue_session_webhook", side_effect=ConnectionError("redis down")), patch(
        "services.webhooks.deliver_session_webhook", deliver
    ):
        assert schedule_session_webhook("s-1") == "inline"
        await asyncio.sleep(0)
        await asyncio.sleep(0)

    deliver.assert_awaited_once_with("s-1")


def test_retry_intervals_back_off_and_cap():
    assert retry_intervals(4) == [10, 40, 160, 640]
    assert retry_intervals(6)[-1] == 3600
    assert retry_intervals(0) == []


@pytest.mark.asyncio
async def test_mark_tenant_period_paid(db, session_maker, make_client):
    tenant = await make_client(
        "TENANTCO",
        client_source="tenant",
        tenant_id="tenant-7",
        webhook_url="https://tenant.example/billing",
    )

    captured = []
    async with _recording_client(captured) as http:
        result = await mark_tenant_period_paid(
            tenant.id,
            db,
            period_start=date(2026, 9, 1),
            period_end=date(2026, 9, 30),
            paid_amount=Decimal("1250.50"),
            actor="finance@example.com",
            client=http,
        )

    assert result["success"] is True
    assert result["tenant_id"] == "tenant-7"
    assert result["webhook_delivered"] is True
    assert str(captured[0].url) == "https://tenant.example/billing/payment"
    body = json.loads(captured[0].content)
    assert body["event"] == "payment.recorded"
    assert body["paid_amount"] == "1250.50"

    async with session_maker() as check:
        period = (
            await check.execute(select(TenantBillingPeriod).where(TenantBillingPeriod.client_id == tenant.id))
        ).scalar_one()
    assert period.payment_status == "paid"
    assert period.webhook_delivered is True
    assert period.recorded_by == "finance@example.com"


@pytest.mark.asyncio
async def test_mark_paid_failed_delivery_is_recorded(db, session_maker, make_client):
    tenant = await make_client("TENANTCO", client_source="tenant", tenant_id="tenant-7", webhook_url="https://tenant.example")

    async with _recording_client([], status_code=502) as http:
        result = await mark_tenant_period_paid(
            tenant.id,
            db,
            period_start=date(2026, 9, 1),
            period_end=date(2026, 9, 30),
            paid_amount=None,
            actor="finance@example.com",
            client=http,
        )

    assert result["webhook_delivered"] is False
    assert result["webhook_error"] == "HTTP 502"
    async with session_maker() as check:
        period = (
            await check.execute(select(TenantBillingPeriod).where(TenantBillingPeriod.client_id == tenant.id))
        ).scalar_one()
    assert period.payment_status == "paid"
    assert period.webhook_last_error == "HTTP 502"


@pytest.mark.asyncio
async def test_mark_paid_rejections(db, make_client, monkeypatch):
    monkeypatch.setattr(settings, "TENANT_PAYMENT_WEBHOOK_URL", "")
    api_client = await make_client("DIRECT", webhook_url="https://direct.example")
    tenant = await make_client("TENANTCO", client_source="tenant", tenant_id="tenant-7")
    api_client_id = api_client.id
    tenant_id = tenant.id

    with pytest.raises(ConflictError):
        await mark_tenant_period_paid(
            api_client_id,
            db,
            period_start=date(2026, 9, 1),
            period_end=date(2026, 9, 30),
            paid_amount=None,
            actor="finance@example.com",
        )
    with pytest.raises(ValidationError):
        await mark_tenant_period_paid(
            tenant_id,
            db,
            period_start=date(2026, 9, 1),
            period_end=date(2026, 9, 30),
            paid_amount=None,
            actor="finance@example.com",
        )
    with pytest.raises(ValidationError):
        await mark_tenant_period_paid(
            tenant_id,
            db,
            period_start=date(2026, 9, 30),
            period_end=date(2026, 9, 1),
            paid_amount=None,
            actor="finance@example.com",
        )


@pytest.mark.asyncio
async def test_tenant_billing_periods_newest_first(db, make_client):
    tenant = await make_client(
        "TENANTCO",
        client_source="tenant",
        tenant_id="tenant-7",
        webhook_url="https://tenant.example/billing",
    )
    direct = await make_client("DIRECT")
    tenant_id = tenant.id
    direct_id = direct.id

    captured = []
    async with _recording_client(captured) as http:
        for start, end in ((date(2026, 8, 1), date(2026, 8, 31)), (date(2026, 9, 1), date(2026, 9, 30))):
            await mark_tenant_period_paid(
                tenant_id,
                db,
                period_start=start,
                period_end=end,
                paid_amount=Decimal("400"),
                actor="finance@example.com",
                client=http,
            )

    periods = await list_tenant_billing_periods(tenant_id, db)
    assert [period["period_start"] for period in periods] == ["2026-09-01", "2026-08-01"]
    assert periods[0]["payment_status"] == "paid"
    assert periods[0]["paid_amount"] == "400.00"
    assert periods[0]["webhook_delivered"] is True
    assert len(await list_tenant_billing_periods(tenant_id, db, limit=1)) == 1

    with pytest.raises(ConflictError):
        await list_tenant_billing_periods(direct_id, db)
    with pytest.raises(NotFoundError):
        await list_tenant_billing_periods("missing", db)

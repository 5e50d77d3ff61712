from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy import delete, func
from sqlalchemy.future import select

from models.invoice import Invoice, InvoiceLineItem
from services.billing_time import utcnow
from services.documents import TextDocumentRenderer, set_document_renderer
from services.errors import ConflictError, NoBillablePeriodError, UpstreamError
from services.invoices import (
    cleanup_stuck_invoices,
    compute_tax,
    credits_to_currency,
    generate_invoice,
    get_invoice_detail,
    next_document_number,
    preview_invoice,
    void_invoice,
)
from services.payments import record_payment
from services.storage import get_document_store


# 2026-09-01 00:00 in Kuala Lumpur (UTC+8).
CLIENT_CREATED = datetime(2026, 8, 31, 16, 0, tzinfo=timezone.utc)
SEPTEMBER_USAGE = datetime(2026, 9, 10, 3, 0, tzinfo=timezone.utc)
OCTOBER_RUN = datetime(2026, 10, 1, 2, 0, tzinfo=timezone.utc)
NOVEMBER_RUN = datetime(2026, 11, 1, 2, 0, tzinfo=timezone.utc)


class FailingRenderer(TextDocumentRenderer):
    def render_invoice(self, data):
        raise RuntimeError("renderer offline")


async def _invoice_count(session_maker):
    async with session_maker() as check:
        return (await check.execute(select(func.count(Invoice.id)))).scalar()


def test_currency_conversion_and_tax():
    assert credits_to_currency(200) == Decimal("20.00")
    assert credits_to_currency(5) == Decimal("0.50")
    assert compute_tax(Decimal("20.00")) == Decimal("1.60")
    assert compute_tax(Decimal("0.55"), Decimal("0.08")) == Decimal("0.04")


@pytest.mark.asyncio
async def test_generate_invoice_for_billed_usage(db, make_client, make_billed_usage):
    client = await make_client(allow_overdraft=True, created_at=CLIENT_CREATED)
    await make_billed_usage(client, count=5, credits_per_session=40, billed_at=SEPTEMBER_USAGE)

    invoice = await generate_invoice(client.id, db, actor="ops@example.com", now=OCTOBER_RUN)

    assert invoice["invoice_number"] == "INV-ACME-202610-001"
    assert invoice["status"] == "generated"
    assert invoice["period_start"] == "2026-09-01"
    assert invoice["period_end"] == "2026-09-30"
    assert invoice["due_date"] == "2026-10-15"
    assert invoice["total_usage_credits"] == 200
    assert invoice["credit_balance_at_generation"] == -200
    assert invoice["amount_due_credits"] == 200
    assert invoice["amount_due_currency"] == "20.00"
    assert invoice["tax_amount"] == "1.60"
    assert invoice["total_with_tax"] == "21.60"
    assert invoice["line_items"] == [
        {
            "line_type": "usage",
            "product_id": "identity_verification",
            "tier_name": "Tier 1",
            "session_count": 5,
            "credits_per_session": 40,
            "reference_invoice_id": None,
            "reference_invoice_number": None,
            "total_credits": 200,
            "total_currency": "20.00",
        }
    ]

    document = get_document_store().read_bytes(invoice["document_key"]).decode()
    assert "INVOICE INV-ACME-202610-001" in document
    assert "Tier 1: 5 x 40 credits = 200" in document


@pytest.mark.asyncio
async def test_prepaid_client_owes_nothing(db, make_client, make_billed_usage):
    client = await make_client(credits=1000, created_at=CLIENT_CREATED)
    await make_billed_usage(client, count=3, credits_per_session=40, billed_at=SEPTEMBER_USAGE)

    invoice = await generate_invoice(client.id, db, now=OCTOBER_RUN)

    assert invoice["total_usage_credits"] == 120
    assert invoice["amount_due_credits"] == 0
    assert invoice["total_with_tax"] == "0.00"


@pytest.mark.asyncio
async def test_periods_are_contiguous_and_unpaid_invoices_carry_over(db, session_maker, make_client, make_billed_usage):
    client = await make_client(allow_overdraft=True, created_at=CLIENT_CREATED)
    await make_billed_usage(client, count=5, credits_per_session=40, billed_at=SEPTEMBER_USAGE)
    client_id = client.id

    first = await generate_invoice(client_id, db, now=OCTOBER_RUN)
    with pytest.raises(NoBillablePeriodError):
        await generate_invoice(client_id, db, now=OCTOBER_RUN)

    second = await generate_invoice(client_id, db, now=NOVEMBER_RUN)

    assert second["invoice_number"] == "INV-ACME-202611-001"
    assert second["period_start"] == "2026-10-01"
    assert second["period_end"] == "2026-10-31"
    assert second["total_usage_credits"] == 0
    assert second["previous_balance_credits"] == 200
    assert second["amount_due_credits"] == 200
    carried = [item for item in second["line_items"] if item["line_type"] == "previous_balance"]
    assert carried[0]["reference_invoice_number"] == first["invoice_number"]

    async with session_maker() as check:
        previous = await check.get(Invoice, first["id"])
    assert previous.status == "superseded"
    assert previous.superseded_by_invoice_id == second["id"]


@pytest.mark.asyncio
async def test_void_restores_superseded_invoice(db, session_maker, make_client, make_billed_usage):
    client = await make_client(allow_overdraft=True, created_at=CLIENT_CREATED)
    await make_billed_usage(client, count=2, credits_per_session=40, billed_at=SEPTEMBER_USAGE)
    client_id = client.id
    first = await generate_invoice(client_id, db, now=OCTOBER_RUN)
    second = await generate_invoice(client_id, db, now=NOVEMBER_RUN)

    voided = await void_invoice(client_id, second["id"], db, actor="ops@example.com")

    assert voided["status"] == "void"
    assert voided["restored_invoice_ids"] == [first["id"]]
    async with session_maker() as check:
        restored = await check.get(Invoice, first["id"])
    assert restored.status == "generated"
    assert restored.superseded_by_invoice_id is None

    with pytest.raises(ConflictError):
        await void_invoice(client_id, second["id"], db)

    # The voided period is billable again.
    regenerated = await generate_invoice(client_id, db, now=NOVEMBER_RUN)
    assert regenerated["period_start"] == "2026-10-01"
    assert regenerated["invoice_number"] == "INV-ACME-202611-002"


@pytest.mark.asyncio
async def test_void_rejected_once_paid(db, make_client, make_billed_usage):
    client = await make_client(allow_overdraft=True, created_at=CLIENT_CREATED)
    await make_billed_usage(client, count=5, credits_per_session=40, billed_at=SEPTEMBER_USAGE)
    invoice = await generate_invoice(client.id, db, now=OCTOBER_RUN)
    await record_payment(client.id, invoice["id"], db, amount_credits=50, payment_date=date(2026, 10, 5), actor="ops")

    with pytest.raises(ConflictError) as exc_info:
        await void_invoice(client.id, invoice["id"], db)
    assert exc_info.value.detail["amount_paid_credits"] == 50


@pytest.mark.asyncio
async def test_superseded_invoice_cannot_be_voided(db, session_maker, make_client, make_billed_usage):
    client = await make_client(allow_overdraft=True, created_at=CLIENT_CREATED)
    await make_billed_usage(client, count=2, credits_per_session=40, billed_at=SEPTEMBER_USAGE)
    client_id = client.id
    first = await generate_invoice(client_id, db, now=OCTOBER_RUN)
    second = await generate_invoice(client_id, db, now=NOVEMBER_RUN)

    with pytest.raises(ConflictError) as exc_info:
        await void_invoice(client_id, first["id"], db)
    assert exc_info.value.detail["status"] == "superseded"

    # A void invoice still pointing at the superseding one is never revived.
    stray = Invoice(
        client_id=client_id,
        invoice_number="INV-ACME-202610-900",
        period_start=date(2026, 9, 1),
        period_end=date(2026, 9, 30),
        due_date=date(2026, 10, 15),
        status="void",
        superseded_by_invoice_id=second["id"],
        generated_at=utcnow(),
    )
    db.add(stray)
    await db.commit()
    stray_id = stray.id

    voided = await void_invoice(client_id, second["id"], db)

    assert voided["restored_invoice_ids"] == [first["id"]]
    async with session_maker() as check:
        assert (await check.get(Invoice, first["id"])).status == "generated"
        assert (await check.get(Invoice, stray_id)).status == "void"


@pytest.mark.asyncio
async def test_document_numbers_continue_past_three_digits(db, make_client):
    client = await make_client(created_at=CLIENT_CREATED)
    for number in ("INV-ACME-202610-999", "INV-ACME-202610-1000"):
        db.add(
            Invoice(
                client_id=client.id,
                invoice_number=number,
                period_start=date(2026, 9, 1),
                period_end=date(2026, 9, 30),
                due_date=date(2026, 10, 15),
                status="void",
                generated_at=utcnow(),
            )
        )
    await db.commit()

    assert await next_document_number("INV", "ACME", Invoice.invoice_number, db, now=OCTOBER_RUN) == "INV-ACME-202610-1001"
    assert await next_document_number("INV", "ACME", Invoice.invoice_number, db, now=NOVEMBER_RUN) == "INV-ACME-202611-001"


@pytest.mark.asyncio
async def test_preview_writes_nothing(db, session_maker, make_client, make_billed_usage):
    client = await make_client(allow_overdraft=True, created_at=CLIENT_CREATED)
    await make_billed_usage(client, count=5, credits_per_session=40, billed_at=SEPTEMBER_USAGE)

    preview = await preview_invoice(client.id, db, now=OCTOBER_RUN)

    assert preview["amount_due_currency"] == "20.00"
    assert preview["tax_amount"] == "1.60"
    assert preview["period_end"] == "2026-09-30"
    assert await _invoice_count(session_maker) == 0


@pytest.mark.asyncio
async def test_preview_with_explicit_end_date(db, make_client, make_billed_usage):
    client = await make_client(allow_overdraft=True, created_at=CLIENT_CREATED)
    await make_billed_usage(client, count=2, credits_per_session=40, billed_at=SEPTEMBER_USAGE)
    await make_billed_usage(client, count=1, credits_per_session=40, billed_at=SEPTEMBER_USAGE + timedelta(days=15))

    preview = await preview_invoice(client.id, db, end_date=date(2026, 9, 15), now=OCTOBER_RUN)

    assert preview["period_end"] == "2026-09-15"
    assert preview["total_usage_credits"] == 80
    assert preview["amount_due_credits"] == 120


@pytest.mark.asyncio
async def test_render_failure_removes_pending_invoice(db, session_maker, make_client, make_billed_usage):
    client = await make_client(allow_overdraft=True, created_at=CLIENT_CREATED)
    await make_billed_usage(client, count=1, credits_per_session=40, billed_at=SEPTEMBER_USAGE)
    set_document_renderer(FailingRenderer())

    with pytest.raises(UpstreamError):
        await generate_invoice(client.id, db, now=OCTOBER_RUN)

    assert await _invoice_count(session_maker) == 0
    async with session_maker() as check:
        items = (await check.execute(select(func.count(InvoiceLineItem.id)))).scalar()
    assert items == 0

    set_document_renderer(None)
    invoice = await generate_invoice(client.id, db, now=OCTOBER_RUN)
    assert invoice["invoice_number"] == "INV-ACME-202610-001"


@pytest.mark.asyncio
async def test_fresh_pending_invoice_blocks_generation(db, make_client):
    client = await make_client(created_at=CLIENT_CREATED)
    db.add(
        Invoice(
            client_id=client.id,
            invoice_number="INV-ACME-202610-001",
            period_start=date(2026, 9, 1),
            period_end=date(2026, 9, 30),
            due_date=date(2026, 10, 15),
            status="pending",
            generated_at=utcnow(),
        )
    )
    await db.commit()

    with pytest.raises(ConflictError):
        await generate_invoice(client.id, db, now=OCTOBER_RUN)


@pytest.mark.asyncio
async def test_cleanup_removes_stuck_invoices(db, make_client):
    client = await make_client(created_at=CLIENT_CREATED)
    db.add_all(
        [
            Invoice(
                client_id=client.id,
                invoice_number="INV-ACME-202610-001",
                period_start=date(2026, 9, 1),
                period_end=date(2026, 9, 30),
                due_date=date(2026, 10, 15),
                status="pending",
                generated_at=utcnow() - timedelta(hours=3),
            ),
            Invoice(
                client_id=client.id,
                invoice_number="INV-ACME-202610-002",
                period_start=date(2026, 9, 1),
                period_end=date(2026, 9, 30),
                due_date=date(2026, 10, 15),
                status="generated",
                document_key=None,
                generated_at=utcnow() - timedelta(hours=2),
            ),
        ]
    )
    await db.commit()

    result = await cleanup_stuck_invoices(client.id, db)

    assert result == {"deleted": 2, "invoice_numbers": ["INV-ACME-202610-001", "INV-ACME-202610-002"]}
    again = await cleanup_stuck_invoices(client.id, db)
    assert again["deleted"] == 0


@pytest.mark.asyncio
async def test_cleanup_keeps_fresh_pending_invoice(db, make_client):
    client = await make_client(created_at=CLIENT_CREATED)
    db.add(
        Invoice(
            client_id=client.id,
            invoice_number="INV-ACME-202610-001",
            period_start=date(2026, 9, 1),
            period_end=date(2026, 9, 30),
            due_date=date(2026, 10, 15),
            status="pending",
            generated_at=utcnow(),
        )
    )
    await db.commit()

    result = await cleanup_stuck_invoices(client.id, db)

    assert result == {"deleted": 0, "invoice_numbers": []}


@pytest.mark.asyncio
async def test_pending_invoice_removed_during_render(db, session_maker, make_client, make_billed_usage):
    client = await make_client(allow_overdraft=True, created_at=CLIENT_CREATED)
    await make_billed_usage(client, count=1, credits_per_session=40, billed_at=SEPTEMBER_USAGE)
    client_id = client.id

    async def render_after_removal(owner_id, invoice_id, data):
        async with session_maker() as other:
            await other.execute(delete(InvoiceLineItem).where(InvoiceLineItem.invoice_id == invoice_id))
            await other.execute(delete(Invoice).where(Invoice.id == invoice_id))
            await other.commit()
        return f"invoices/{owner_id}/{invoice_id}.txt"

    with patch("services.invoices._render_invoice_document", render_after_removal):
        with pytest.raises(ConflictError):
            await generate_invoice(client_id, db, now=OCTOBER_RUN)

    assert await _invoice_count(session_maker) == 0


@pytest.mark.asyncio
async def test_invoice_detail_lists_payments(db, make_client, make_billed_usage):
    client = await make_client(allow_overdraft=True, created_at=CLIENT_CREATED)
    await make_billed_usage(client, count=5, credits_per_session=40, billed_at=SEPTEMBER_USAGE)
    invoice = await generate_invoice(client.id, db, now=OCTOBER_RUN)
    await record_payment(client.id, invoice["id"], db, amount_credits=60, payment_date=date(2026, 10, 3), actor="ops")

    detail = await get_invoice_detail(client.id, invoice["id"], db)

    assert detail["status"] == "partial"
    assert detail["amount_paid_credits"] == 60
    assert detail["amount_paid_currency"] == "6.00"
    assert [payment["amount_credits"] for payment in detail["payments"]] == [60]
    assert detail["line_items"][0]["tier_name"] == "Tier 1"

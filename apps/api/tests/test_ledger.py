import pytest

from config import settings
from services.errors import InsufficientCreditError, ValidationError
from services.ledger import append_entry, check_credit, get_balance, get_ledger_summary, post_manual_entry


PRODUCT = settings.DEFAULT_PRODUCT_ID


@pytest.mark.asyncio
async def test_append_entry_keeps_running_balance(db, make_client):
    client = await make_client()

    first = await append_entry(client.id, PRODUCT, db, amount=100, entry_type="included")
    second = await append_entry(client.id, PRODUCT, db, amount=-40, entry_type="usage", reference_id="s-1")
    third = await append_entry(client.id, PRODUCT, db, amount=-70, entry_type="usage", reference_id="s-2")
    await db.commit()

    assert [first.balance_after, second.balance_after, third.balance_after] == [100, 60, -10]
    assert await get_balance(client.id, PRODUCT, db) == -10


@pytest.mark.asyncio
async def test_balances_are_scoped_per_product(db, make_client):
    client = await make_client(credits=50)

    other = await append_entry(client.id, "face_match", db, amount=5, entry_type="topup")
    await db.commit()

    assert other.balance_after == 5
    assert await get_balance(client.id, PRODUCT, db) == 50


@pytest.mark.asyncio
async def test_append_entry_rejects_unknown_type(db, make_client):
    client = await make_client()
    with pytest.raises(ValidationError):
        await append_entry(client.id, PRODUCT, db, amount=1, entry_type="bonus")


@pytest.mark.asyncio
async def test_check_credit_without_overdraft(db, make_client):
    client = await make_client(credits=30)

    with pytest.raises(InsufficientCreditError) as exc_info:
        await check_credit(client.id, PRODUCT, db, unit_cost=40, allow_overdraft=False)

    assert exc_info.value.status_code == 402
    assert exc_info.value.detail["error"] == "INSUFFICIENT_CREDITS"
    assert exc_info.value.detail["balance"] == 30
    assert exc_info.value.detail["required"] == 40


@pytest.mark.asyncio
async def test_check_credit_with_overdraft_only_reads(db, make_client):
    client = await make_client(credits=0)

    balance = await check_credit(client.id, PRODUCT, db, unit_cost=40, allow_overdraft=True)

    assert balance == 0
    summary = await get_ledger_summary(client.id, db)
    assert summary["entries"] == []


@pytest.mark.asyncio
async def test_manual_entry_validation(db, make_client):
    client = await make_client()

    with pytest.raises(ValidationError):
        await post_manual_entry(client.id, db, amount=10, entry_type="usage", actor="ops@example.com")
    with pytest.raises(ValidationError):
        await post_manual_entry(client.id, db, amount=0, entry_type="topup", actor="ops@example.com")

    result = await post_manual_entry(
        client.id,
        db,
        amount=-15,
        entry_type="adjustment",
        actor="ops@example.com",
        description="Goodwill correction",
    )
    assert result["balance_after"] == -15
    assert result["entry"]["created_by"] == "ops@example.com"
    assert result["entry"]["entry_type"] == "adjustment"

import uuid
from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config import settings
from database import Base
from main import app
from models.client import Client
from models.client_product_config import ClientProductConfig
from models.verification_session import VerificationSession
from routers import rate_limit
from services.billing_time import utcnow
from services.documents import set_document_renderer
from services.ledger import append_entry
from services.provider import set_provider_gateway
from services.storage import LocalDocumentStore, set_document_store


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest.fixture(autouse=True)
def isolated_documents(tmp_path):
    """Route document writes into the test's tmp dir and reset pluggable backends."""
    set_document_store(LocalDocumentStore(str(tmp_path / "documents")))
    yield
    set_document_store(None)
    set_document_renderer(None)
    set_provider_gateway(None)


@pytest_asyncio.fixture
async def session_maker(tmp_path, monkeypatch):
    db_path = tmp_path / "billing.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    # Background deliveries and the monthly run open their own sessions.
    monkeypatch.setattr("services.webhooks.async_session_maker", maker)
    monkeypatch.setattr("services.invoices.async_session_maker", maker)
    yield maker
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def make_client(db):
    async def _make(
        code="ACME",
        *,
        credits=0,
        allow_overdraft=False,
        created_at=None,
        client_source="api",
        tenant_id=None,
        webhook_url=None,
    ):
        client = Client(
            id=str(uuid.uuid4()),
            name=f"{code} Sdn Bhd",
            code=code,
            status="active",
            client_source=client_source,
            tenant_id=tenant_id,
            created_at=created_at or (utcnow() - timedelta(days=60)),
        )
        config = ClientProductConfig(
            id=str(uuid.uuid4()),
            client_id=client.id,
            product_id=settings.DEFAULT_PRODUCT_ID,
            enabled=True,
            webhook_url=webhook_url,
            allow_overdraft=allow_overdraft,
        )
        db.add_all([client, config])
        await db.flush()
        if credits:
            await append_entry(
                client.id,
                settings.DEFAULT_PRODUCT_ID,
                db,
                amount=credits,
                entry_type="topup",
                actor="test",
            )
        await db.commit()
        return client

    return _make


@pytest.fixture
def make_session(db):
    async def _make(client, *, ref_id=None, status="pending", expires_at=None, webhook_url=None, metadata=None):
        session = VerificationSession(
            id=str(uuid.uuid4()),
            client_id=client.id,
            product_id=settings.DEFAULT_PRODUCT_ID,
            ref_id=ref_id or f"{client.code}_{uuid.uuid4().hex[:10]}",
            status=status,
            document_name="Siti Aminah",
            document_number="900101-14-5566",
            document_type="1",
            webhook_url=webhook_url,
            metadata_json=metadata or {},
            expires_at=expires_at or (utcnow() + timedelta(hours=24)),
        )
        db.add(session)
        await db.commit()
        return session

    return _make


@pytest.fixture
def make_billed_usage(db):
    """Billed sessions plus their usage debits, as the callback path would leave them."""

    async def _make(client, *, count, credits_per_session, billed_at, tier_name="Tier 1"):
        sessions = []
        for index in range(count):
            session = VerificationSession(
                id=str(uuid.uuid4()),
                client_id=client.id,
                product_id=settings.DEFAULT_PRODUCT_ID,
                ref_id=f"{client.code}_{uuid.uuid4().hex[:10]}",
                status="completed",
                result="approved",
                document_name="Siti Aminah",
                document_number="900101-14-5566",
                billed=True,
                billed_at=billed_at + timedelta(minutes=index),
                billed_credits=credits_per_session,
                billing_tier_name=tier_name,
                billing_sequence=index + 1,
            )
            db.add(session)
            await db.flush()
            await append_entry(
                client.id,
                settings.DEFAULT_PRODUCT_ID,
                db,
                amount=-credits_per_session,
                entry_type="usage",
                reference_id=session.id,
                actor="system",
            )
            sessions.append(session)
        await db.commit()
        return sessions

    return _make

"""
Metered Billing API - FastAPI Backend
Main application entry point with health check and API routing.
"""

import asyncio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from config import settings, validate_security_settings
from database import engine, Base, async_session_maker
import models  # noqa: F401
from routers import (
    health,
    billing,
    clients,
    documents,
    invoices,
    sessions,
    provider_webhooks,
    internal,
)
from services.sessions import expire_stale_sessions


async def _run_expiry_sweep() -> int:
    async with async_session_maker() as db:
        expired = await expire_stale_sessions(db)
    return len(expired)


async def _periodic_session_expiry() -> None:
    interval_minutes = max(int(settings.SESSION_EXPIRY_SWEEP_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            expired = await _run_expiry_sweep()
            if expired:
                print(f"⌛ Session expiry sweep: expired={expired}")
        except Exception as exc:
            print(f"⚠️ Session expiry sweep failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Metered Billing API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    try:
        expired = await _run_expiry_sweep()
        if expired:
            print(f"♻️ Expired {expired} stale verification sessions after startup.")
    except Exception as exc:
        print(f"⚠️ Startup session expiry skipped: {exc}")
    expiry_task = None
    if int(settings.SESSION_EXPIRY_SWEEP_INTERVAL_MINUTES) > 0:
        expiry_task = asyncio.create_task(_periodic_session_expiry())
        print(
            "📅 Session expiry loop enabled "
            f"(every {int(settings.SESSION_EXPIRY_SWEEP_INTERVAL_MINUTES)} min)."
        )
    yield
    # Shutdown
    if expiry_task is not None:
        expiry_task.cancel()
        try:
            await expiry_task
        except asyncio.CancelledError:
            pass
    print("👋 Shutting down API...")


app = FastAPI(
    title="Metered Billing API",
    description="Metered credit billing, invoicing and signed webhook delivery for identity verification",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(provider_webhooks.router, prefix="/webhooks", tags=["Webhooks"])
app.include_router(sessions.router, prefix="/v1", tags=["Sessions"])
app.include_router(sessions.admin_router, prefix="/admin/sessions", tags=["Sessions"])
app.include_router(clients.router, prefix="/admin/clients", tags=["Clients"])
app.include_router(billing.router, prefix="/admin/clients", tags=["Billing"])
app.include_router(invoices.router, prefix="/admin/clients", tags=["Invoices"])
app.include_router(clients.report_router, prefix="/admin", tags=["Reports"])
app.include_router(documents.router, prefix="/documents", tags=["Documents"])
app.include_router(internal.router, prefix="/internal", tags=["Internal"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Metered Billing API",
        "version": "0.1.0",
        "status": "running"
    }

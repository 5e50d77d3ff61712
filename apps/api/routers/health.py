"""Liveness, readiness and dependency health for the billing API."""

import asyncio
from typing import Any, Dict

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text

from config import settings
from database import engine
from services.storage import get_document_store
from services.webhook_queue import get_webhook_queue

router = APIRouter()

REQUIRED_SETTINGS = ("PROVIDER_API_URL", "PROVIDER_API_KEY", "PROVIDER_ENCRYPTION_KEY", "INTERNAL_API_KEY")
HEALTH_CHECK_KEY = ".health/ping"


async def _check_database() -> Dict[str, Any]:
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))
    return {"status": "up"}


def _check_webhook_queue() -> Dict[str, Any]:
    queue = get_webhook_queue()
    return {
        "status": "up",
        "queued": queue.count,
        "failed": queue.failed_job_registry.count,
    }


def _check_document_store() -> Dict[str, Any]:
    store = get_document_store()
    store.put_bytes(HEALTH_CHECK_KEY, b"ok", "text/plain")
    return {"status": "up" if store.read_bytes(HEALTH_CHECK_KEY) == b"ok" else "unreadable"}


@router.get("/health")
async def health_check():
    """Report each backing service; webhook delivery degrades to in-process without the queue."""
    results = await asyncio.gather(
        _check_database(),
        asyncio.to_thread(_check_webhook_queue),
        asyncio.to_thread(_check_document_store),
        return_exceptions=True,
    )
    components: Dict[str, Any] = {}
    for name, result in zip(("database", "webhook_queue", "document_store"), results):
        if isinstance(result, Exception):
            components[name] = {"status": "down", "error": str(result)}
        else:
            components[name] = result

    degraded = any(component["status"] != "up" for component in components.values())
    return {
        "status": "degraded" if degraded else "healthy",
        "provider": "configured" if settings.PROVIDER_API_URL and settings.PROVIDER_API_KEY else "missing",
        **components,
    }


@router.get("/health/ready")
async def readiness_check():
    missing = [name for name in REQUIRED_SETTINGS if not getattr(settings, name)]
    if missing:
        return JSONResponse(status_code=503, content={"ready": False, "missing": missing})
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    return {"alive": True}

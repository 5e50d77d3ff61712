"""Scheduler-triggered internal endpoints."""

from fastapi import APIRouter, Depends

from routers.auth_scope import require_internal_key
from services.invoices import generate_all_monthly_invoices

router = APIRouter()


@router.post("/cron/generate-invoices")
async def cron_generate_invoices(_key: None = Depends(require_internal_key)):
    """Invoice every active client through the end of last month."""
    results = await generate_all_monthly_invoices(actor="cron")
    return {"success": True, "results": results}

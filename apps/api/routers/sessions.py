"""Client-facing verification session API and admin re-delivery."""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_api_client, get_auth_context
from routers.rate_limit import client_quota
from services.api_keys import ApiClientContext
from services.sessions import create_session, get_session, serialize_session
from services.webhooks import redeliver_session_webhook

router = APIRouter()
admin_router = APIRouter()


class CreateSessionRequest(BaseModel):
    document_name: str = Field(min_length=1, max_length=200)
    document_number: str = Field(min_length=1, max_length=64)
    document_type: str = "1"
    success_url: Optional[str] = None
    fail_url: Optional[str] = None
    webhook_url: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


@router.post("/sessions", status_code=201)
async def post_session(
    request: CreateSessionRequest,
    api_client: ApiClientContext = Depends(client_quota("session_create", "SESSION_CREATE_RATE_LIMIT_PER_MINUTE")),
    db: AsyncSession = Depends(get_db),
):
    return await create_session(
        api_client,
        db,
        document_name=request.document_name,
        document_number=request.document_number,
        document_type=request.document_type,
        success_url=request.success_url,
        fail_url=request.fail_url,
        webhook_url=request.webhook_url,
        metadata=request.metadata,
    )


@router.get("/sessions/{session_id}")
async def get_session_status(
    session_id: str,
    api_client: ApiClientContext = Depends(get_api_client),
    db: AsyncSession = Depends(get_db),
):
    session = await get_session(session_id, db, client_id=api_client.client_id)
    return serialize_session(session)


@admin_router.post("/{session_id}/webhook")
async def post_session_webhook(
    session_id: str,
    _auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await redeliver_session_webhook(session_id, db)

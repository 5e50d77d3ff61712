"""Signed invoice and receipt document downloads."""

import asyncio

from fastapi import APIRouter
from fastapi.responses import Response

from services.errors import AuthError, NotFoundError
from services.session_token import decode_document_token
from services.storage import get_document_store, media_type_for

router = APIRouter()


@router.get("/{token}")
async def download_document(token: str):
    try:
        claims = decode_document_token(token)
    except ValueError as exc:
        raise AuthError(str(exc)) from exc

    key = str(claims["key"])
    try:
        body = await asyncio.to_thread(get_document_store().read_bytes, key)
    except (FileNotFoundError, ValueError) as exc:
        raise NotFoundError("Document not found") from exc

    filename = str(claims.get("filename") or key.rsplit("/", 1)[-1])
    return Response(
        content=body,
        media_type=media_type_for(key),
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )

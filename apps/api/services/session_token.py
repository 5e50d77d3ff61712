"""Signed JWTs used by the billing API.

Two token kinds share ``JWT_SECRET``: admin bearer tokens minted by the
admin identity provider, and short-lived document download grants that
stand in for pre-signed object URLs.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import settings


ADMIN_TOKEN_TYPE = "billing_admin"
DOCUMENT_TOKEN_TYPE = "billing_document"


def _sign(claims: Dict[str, Any], ttl: timedelta) -> Dict[str, Any]:
    now = datetime.now(timezone.utc)
    expires_at = now + ttl
    payload = dict(claims, iat=int(now.timestamp()), exp=int(expires_at.timestamp()))
    return {
        "token": jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM),
        "expires_at": int(expires_at.timestamp()),
    }


def _verify(token: str, token_type: str, subject_claim: str) -> Dict[str, Any]:
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise ValueError("Invalid or expired token.") from exc
    if str(payload.get("type", "")).strip() != token_type:
        raise ValueError("Invalid token type.")
    if not str(payload.get(subject_claim, "")).strip():
        raise ValueError(f"Token missing {subject_claim}.")
    return payload


def create_session_token(
    admin_id: str,
    email: Optional[str] = None,
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    """Admin bearer token; used by tests and local tooling."""
    claims: Dict[str, Any] = {"sub": admin_id, "type": ADMIN_TOKEN_TYPE}
    if email:
        claims["email"] = email
    hours = max(int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24), 1)
    return _sign(claims, timedelta(hours=hours))


def decode_session_token(token: str) -> Dict[str, Any]:
    return _verify(token, ADMIN_TOKEN_TYPE, "sub")


def create_document_token(key: str, filename: Optional[str] = None) -> Dict[str, Any]:
    """Grant read access to one stored document for ``DOCUMENT_URL_TTL_MINUTES``."""
    claims: Dict[str, Any] = {"key": key, "type": DOCUMENT_TOKEN_TYPE}
    if filename:
        claims["filename"] = filename
    minutes = max(int(settings.DOCUMENT_URL_TTL_MINUTES), 1)
    return _sign(claims, timedelta(minutes=minutes))


def decode_document_token(token: str) -> Dict[str, Any]:
    return _verify(token, DOCUMENT_TOKEN_TYPE, "key")

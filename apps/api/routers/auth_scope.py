"""Authentication dependencies: admin bearer tokens, client API keys, internal key."""

import secrets
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from config import require_internal_api_key
from database import get_db
from services.api_keys import ApiClientContext, authenticate_api_key
from services.errors import AuthError, BillingError
from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    admin_id: str
    email: Optional[str] = None

    @property
    def actor(self) -> str:
        return self.email or self.admin_id


def _bearer_token(credentials: Optional[HTTPAuthorizationCredentials]) -> Optional[str]:
    if not credentials or credentials.scheme.lower() != "bearer":
        return None
    return credentials.credentials


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve the admin from a Bearer session token."""
    token = _bearer_token(credentials)
    if not token:
        raise AuthError("Missing Bearer session token.")

    try:
        payload = decode_session_token(token)
    except ValueError as exc:
        raise AuthError(str(exc)) from exc

    return AuthContext(
        admin_id=str(payload.get("sub", "")),
        email=str(payload.get("email", "")) or None,
    )


async def get_api_client(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
    db: AsyncSession = Depends(get_db),
) -> ApiClientContext:
    """Resolve the calling client from its API key."""
    return await authenticate_api_key(_bearer_token(credentials), db)


async def require_internal_key(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> None:
    """Guard for scheduler-triggered endpoints using the pre-shared key."""
    try:
        expected = require_internal_api_key()
    except ValueError as exc:
        raise BillingError(str(exc)) from exc
    token = _bearer_token(credentials)
    if not token or not secrets.compare_digest(token, expected):
        raise AuthError("Invalid internal API key")

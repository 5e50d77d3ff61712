"""Per-caller request quotas.

API-key routes are limited per billing client and admin routes per admin,
so one noisy integration cannot exhaust another client's allowance.
Counters are fixed one-minute windows in Redis, shared by all workers;
while Redis is unreachable each process counts in memory instead.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Tuple

from fastapi import Depends, Request
import redis.asyncio as redis

from config import settings
from routers.auth_scope import AuthContext, get_api_client, get_auth_context
from services.api_keys import ApiClientContext
from services.errors import RateLimitError

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60
KEY_PREFIX = "billing:quota"

_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()


async def _count_in_redis(key: str) -> Tuple[int, int]:
    redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        async with redis_client.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.ttl(key)
            count, ttl = await pipe.execute()
        if ttl < 0:
            await redis_client.expire(key, WINDOW_SECONDS)
            ttl = WINDOW_SECONDS
    finally:
        await redis_client.aclose()
    return int(count), int(ttl)


async def _count_locally(key: str) -> Tuple[int, int]:
    now = time.time()
    async with _local_lock:
        count, reset_at = _local_counters.get(key, (0, now + WINDOW_SECONDS))
        if now >= reset_at:
            count, reset_at = 0, now + WINDOW_SECONDS
        count += 1
        _local_counters[key] = (count, reset_at)
    return count, max(int(reset_at - now), 1)


async def consume_quota(scope: str, subject: str, limit: int) -> None:
    """Count one request for ``subject``; raise once it exceeds ``limit`` this window."""
    if limit <= 0:
        return
    key = f"{KEY_PREFIX}:{scope}:{subject}"
    try:
        count, retry_after = await _count_in_redis(key)
    except Exception as exc:
        logger.warning("Rate limit store unavailable, counting in-process: %s", exc)
        count, retry_after = await _count_locally(key)

    if count > limit:
        logger.info("rate_limited scope=%s subject=%s count=%s limit=%s", scope, subject, count, limit)
        raise RateLimitError(scope, retry_after)


def _limit_for(setting_name: str) -> int:
    return int(getattr(settings, setting_name, 0) or 0)


def _enabled(request: Request) -> bool:
    return not getattr(request.app.state, "disable_rate_limits", False)


def client_quota(scope: str, setting_name: str) -> Callable[..., Awaitable[ApiClientContext]]:
    """Authenticate the API key, then charge the request to its client's quota."""

    async def _dependency(
        request: Request,
        api_client: ApiClientContext = Depends(get_api_client),
    ) -> ApiClientContext:
        if _enabled(request):
            await consume_quota(scope, api_client.client_id, _limit_for(setting_name))
        return api_client

    return _dependency


def admin_quota(scope: str, setting_name: str) -> Callable[..., Awaitable[AuthContext]]:
    """Authenticate the admin token, then charge the request to that admin's quota."""

    async def _dependency(
        request: Request,
        auth: AuthContext = Depends(get_auth_context),
    ) -> AuthContext:
        if _enabled(request):
            await consume_quota(scope, auth.admin_id, _limit_for(setting_name))
        return auth

    return _dependency

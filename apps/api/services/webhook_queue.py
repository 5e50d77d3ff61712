"""Durable outbound webhook queue helpers (Redis/RQ)."""

from __future__ import annotations

import uuid
from typing import List

from redis import Redis
from rq import Queue, Retry
from rq.job import Job

from config import settings


WEBHOOK_QUEUE_NAME = "webhook_deliveries"


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_webhook_queue() -> Queue:
    """Return the configured webhook delivery queue."""
    return Queue(
        name=WEBHOOK_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=120,
    )


def retry_intervals(max_retries: int) -> List[int]:
    """Exponential backoff schedule in seconds, capped at one hour."""
    return [min(10 * (4 ** attempt), 3600) for attempt in range(max(max_retries, 0))]


def enqueue_session_webhook(session_id: str) -> Job:
    """Enqueue one session event delivery with bounded retries."""
    queue = get_webhook_queue()
    max_retries = max(int(settings.OUTBOUND_WEBHOOK_MAX_RETRIES), 0)
    return queue.enqueue(
        "services.webhooks.deliver_session_webhook_job",
        session_id,
        job_id=f"webhook:{session_id}:{uuid.uuid4().hex[:12]}",
        retry=Retry(max=max_retries, interval=retry_intervals(max_retries)) if max_retries else None,
        job_timeout=120,
        result_ttl=86400,
        failure_ttl=7 * 86400,
    )

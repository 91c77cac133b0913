"""Durable ingest job queue helpers (Redis/RQ)."""

from __future__ import annotations

from typing import Optional

from redis import Redis
from rq import Queue, Retry
from rq.job import Job

from config import settings


INGEST_QUEUE_NAME = "ingest_jobs"


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_ingest_queue() -> Queue:
    """Return the configured ingest queue."""
    return Queue(
        name=INGEST_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=600,
    )


def enqueue_asset_refresh(asset_id: str, event_id: Optional[str] = None) -> Job:
    """Enqueue a provider status refresh for work a callback deferred."""
    queue = get_ingest_queue()
    return queue.enqueue(
        "services.reconciliation.refresh_asset_from_provider_job",
        asset_id,
        event_id,
        job_id=f"refresh:{asset_id}",
        retry=Retry(max=3, interval=[15, 60, 180]),
        job_timeout=600,
        result_ttl=86400,
        failure_ttl=86400,
    )


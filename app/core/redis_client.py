# core/redis_client.py
"""
Redis connection and the dispatch markers kept in it.

    dispatch:{jobId} -> "1"   SET NX EX, written before the SQS publish

A marker that is already present means the job for that attempt went out,
so a retried upload does not publish it twice. Markers are best effort:
when Redis is unreachable the publish goes ahead and the worker dedupes by
jobId.
"""

from typing import Optional

import redis

from core.config import settings
from core.logger import logger

DISPATCH_MARKER_PREFIX = "dispatch:"


def build_redis() -> redis.Redis:
    """Client with its own connection pool; the caller closes it on shutdown."""
    connection_kwargs = {
        "host": settings.REDIS_HOST,
        "port": settings.REDIS_PORT,
        "db": settings.REDIS_DB,
        "password": settings.REDIS_PASSWORD or None,
        "decode_responses": True,
        "socket_timeout": settings.REDIS_SOCKET_TIMEOUT,
        "socket_connect_timeout": settings.REDIS_SOCKET_CONNECT_TIMEOUT,
        "max_connections": settings.REDIS_MAX_CONNECTIONS,
        "retry_on_timeout": True,
        "health_check_interval": 30,
    }
    if settings.REDIS_SSL:
        # ElastiCache in-transit encryption, certificates managed by AWS
        connection_kwargs["ssl"] = True
        connection_kwargs["ssl_cert_reqs"] = None

    logger.info(
        f"Redis client for dispatch markers: {settings.REDIS_HOST}:{settings.REDIS_PORT} "
        f"db={settings.REDIS_DB} ssl={settings.REDIS_SSL}"
    )
    return redis.Redis(**connection_kwargs)


class DispatchMarkers:
    """Claim and release the per-job publish markers."""

    def __init__(
        self,
        client: Optional[redis.Redis],
        enabled: Optional[bool] = None,
        ttl: Optional[int] = None,
        prefix: str = DISPATCH_MARKER_PREFIX,
    ):
        self.client = client
        self.enabled = settings.DISPATCH_DEDUPE_ENABLED if enabled is None else enabled
        self.ttl = ttl or settings.DISPATCH_DEDUPE_TTL
        self.prefix = prefix

    @property
    def active(self) -> bool:
        return self.client is not None and self.enabled

    def key(self, job_id: str) -> str:
        return f"{self.prefix}{job_id}"

    def claim(self, job_id: str) -> bool:
        """False when the job was already published."""
        if not self.active:
            return True
        try:
            return bool(self.client.set(self.key(job_id), "1", nx=True, ex=self.ttl))
        except redis.RedisError as e:
            logger.warning(f"Dispatch marker unavailable for {job_id}, publishing without it: {e}")
            return True

    def release(self, job_id: str) -> None:
        """Drop the marker so the same attempt can be published again."""
        if not self.active:
            return
        try:
            self.client.delete(self.key(job_id))
        except redis.RedisError as e:
            logger.warning(f"Could not release dispatch marker for {job_id}: {e}")

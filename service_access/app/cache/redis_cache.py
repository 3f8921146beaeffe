"""
Redis cache of resolved access status for the Access Service.

Only the read-only ``GET /access`` path with ``cached=true`` is served from
here. Attempt gating always reads the store.
"""

import json
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.logging import get_logger
from shared.errors import AccessLayerException
from ..records.models import ExamCategory
from ..resolver.resolver import AccessStatus


class StatusCache:
    """Short-lived cache of ``AccessStatus`` per user and category."""

    STATUS_PREFIX = "access_status:"

    def __init__(self, redis_url: str, ttl_seconds: int = 60, client: Optional[redis.Redis] = None):
        self.redis_url = redis_url
        self.ttl_seconds = ttl_seconds
        self.logger = get_logger("access.cache.redis")
        self.redis: Optional[redis.Redis] = client

    async def start(self):
        """Start the Redis cache."""
        try:
            if self.redis is None:
                self.redis = redis.from_url(
                    self.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                    socket_connect_timeout=5,
                    socket_timeout=5,
                    retry_on_timeout=True,
                    health_check_interval=30
                )

            await self.redis.ping()
            self.logger.info("Redis cache started")

        except (RedisError, OSError) as e:
            self.logger.error("Failed to start Redis cache", error=str(e))
            raise AccessLayerException("REDIS_START_FAILED", str(e)) from e

    async def stop(self):
        """Stop the Redis cache."""
        if self.redis:
            await self.redis.aclose()
            self.logger.info("Redis cache stopped")

    def _key(self, user_id: str, exam_category: ExamCategory, exam_id: Optional[str] = None) -> str:
        key = f"{self.STATUS_PREFIX}{user_id}:{ExamCategory(exam_category).value}"
        return f"{key}:{exam_id}" if exam_id else key

    async def get(self, user_id: str, exam_category: ExamCategory,
                  exam_id: Optional[str] = None) -> Optional[AccessStatus]:
        """Cached status, or None on a miss or any cache error."""
        if self.redis is None:
            return None
        try:
            cached = await self.redis.get(self._key(user_id, exam_category, exam_id))
            if not cached:
                return None
            return AccessStatus.from_dict(json.loads(cached))
        except (RedisError, OSError, ValueError, KeyError) as e:
            self.logger.warning("Error reading cached access status", user_id=user_id, error=str(e))
            return None

    async def set(self, user_id: str, exam_category: ExamCategory, status: AccessStatus,
                  exam_id: Optional[str] = None) -> bool:
        if self.redis is None:
            return False
        try:
            await self.redis.setex(
                self._key(user_id, exam_category, exam_id),
                self.ttl_seconds,
                json.dumps(status.to_dict())
            )
            return True
        except (RedisError, OSError) as e:
            self.logger.warning("Error caching access status", user_id=user_id, error=str(e))
            return False

    async def invalidate(self, user_id: str, exam_category: ExamCategory) -> int:
        """Drop the category status and every per-exam status for the user."""
        if self.redis is None:
            return 0
        base = self._key(user_id, exam_category)
        try:
            keys = [base]
            async for key in self.redis.scan_iter(match=f"{base}:*"):
                keys.append(key)
            deleted = await self.redis.delete(*keys)
            self.logger.debug("Invalidated access status", user_id=user_id, count=deleted)
            return deleted
        except (RedisError, OSError) as e:
            self.logger.warning("Error invalidating access status", user_id=user_id, error=str(e))
            return 0

    async def health_check(self) -> bool:
        """Check Redis health."""
        if self.redis is None:
            return False
        try:
            await self.redis.ping()
            return True
        except (RedisError, OSError):
            return False

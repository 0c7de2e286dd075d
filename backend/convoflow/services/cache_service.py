# /convoflow/services/cache_service.py

import uuid
import logging
from typing import Dict, Optional
import redis.asyncio as redis

from convoflow.config.settings import settings
from convoflow.utils.metrics import lease_operations

# This service guarantees a single active runner per execution id. Leases are
# always tracked in-process; when Redis is configured they are also taken with
# SET NX so a second process cannot pick up the same execution.

logger = logging.getLogger(__name__)

_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""

_REFRESH_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('expire', KEYS[1], ARGV[2])
end
return 0
"""


class ExecutionLeaseManager:
    def __init__(self, redis_url: Optional[str], ttl_seconds: int = 300):
        self.ttl_seconds = ttl_seconds
        self._local: Dict[str, str] = {}
        self.redis = None
        if redis_url:
            try:
                self.redis_pool = redis.ConnectionPool.from_url(redis_url, max_connections=20)
                self.redis = redis.Redis(connection_pool=self.redis_pool)
            except Exception as e:
                logger.critical(f"Failed to connect to Redis at {redis_url}: {e}")
                self.redis = None

    def _key(self, execution_id: str) -> str:
        return f"execution_lease:{execution_id}"

    def is_held(self, execution_id: str) -> bool:
        return execution_id in self._local

    async def acquire(self, execution_id: str) -> Optional[str]:
        """Returns a lease token, or None if another runner owns the execution."""
        if execution_id in self._local:
            lease_operations.labels(operation="acquire", status="rejected").inc()
            return None

        # Reserve locally before the first await so two tasks in this process cannot both pass.
        token = uuid.uuid4().hex
        self._local[execution_id] = token

        if self.redis:
            try:
                acquired = await self.redis.set(self._key(execution_id), token, ex=self.ttl_seconds, nx=True)
            except Exception as e:
                # With Redis configured a lease is only granted once Redis confirms it
                self._local.pop(execution_id, None)
                lease_operations.labels(operation="acquire", status="error").inc()
                logger.warning(f"Redis lease acquire failed for {execution_id}, rejecting run: {e}")
                return None
            if not acquired:
                self._local.pop(execution_id, None)
                lease_operations.labels(operation="acquire", status="rejected").inc()
                return None

        lease_operations.labels(operation="acquire", status="success").inc()
        return token

    async def refresh(self, execution_id: str, token: str):
        if not self.redis or self._local.get(execution_id) != token:
            return
        try:
            await self.redis.eval(_REFRESH_SCRIPT, 1, self._key(execution_id), token, self.ttl_seconds)
            lease_operations.labels(operation="refresh", status="success").inc()
        except Exception as e:
            lease_operations.labels(operation="refresh", status="error").inc()
            logger.warning(f"Redis lease refresh failed for {execution_id}: {e}")

    async def release(self, execution_id: str, token: str):
        if self._local.get(execution_id) == token:
            del self._local[execution_id]
        if not self.redis:
            return
        try:
            await self.redis.eval(_RELEASE_SCRIPT, 1, self._key(execution_id), token)
            lease_operations.labels(operation="release", status="success").inc()
        except Exception as e:
            lease_operations.labels(operation="release", status="error").inc()
            logger.warning(f"Redis lease release failed for {execution_id}: {e}")

    async def close(self):
        if self.redis:
            await self.redis.aclose()

# Globally accessible instance
lease_manager = ExecutionLeaseManager(settings.redis_url, settings.execution_lease_ttl_seconds)

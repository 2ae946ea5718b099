import redis.asyncio as redis
from typing import Optional
import uuid
import structlog
from repositories.base import CacheRepository


logger = structlog.get_logger()


class RedisCacheRepository(CacheRepository):
    """Redis implementation of cache repository.

    Locks are owned: each repository instance writes its own token as the
    lock value and only releases or extends a lock that still holds it.
    """

    def __init__(self, redis_url: str, db: int = 0, key_prefix: str = "zigdex:indexer"):
        self.redis_url = redis_url
        self.db = db
        self.key_prefix = key_prefix
        self.owner = uuid.uuid4().hex
        self.client: Optional[redis.Redis] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        try:
            self.client = redis.from_url(
                self.redis_url,
                db=self.db,
                decode_responses=True,
                socket_timeout=30,
                socket_connect_timeout=30
            )

            await self.client.ping()

            logger.info("Connected to Redis", url=self.redis_url, db=self.db)
        except Exception as e:
            logger.error("Failed to connect to Redis", error=str(e))
            raise

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self.client:
            await self.client.aclose()
            logger.info("Disconnected from Redis")

    async def health_check(self) -> bool:
        """Check Redis health."""
        try:
            if not self.client:
                return False
            await self.client.ping()
            return True
        except Exception as e:
            logger.error("Redis health check failed", error=str(e))
            return False

    def _make_key(self, key: str) -> str:
        """Create prefixed key."""
        return f"{self.key_prefix}:{key}"

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        """Set cache value."""
        try:
            full_key = self._make_key(key)
            if ttl:
                await self.client.setex(full_key, ttl, value)
            else:
                await self.client.set(full_key, value)

            logger.debug("Set cache value", key=key, ttl=ttl)
        except Exception as e:
            logger.error("Failed to set cache value", key=key, error=str(e))
            raise

    async def get(self, key: str) -> Optional[str]:
        """Get cache value."""
        try:
            return await self.client.get(self._make_key(key))
        except Exception as e:
            logger.error("Failed to get cache value", key=key, error=str(e))
            raise

    async def acquire_lock(self, key: str, ttl: int) -> bool:
        """Acquire distributed lock with SET NX EX."""
        try:
            lock_key = self._make_key(f"lock:{key}")
            result = await self.client.set(lock_key, self.owner, nx=True, ex=ttl)

            if result:
                logger.debug("Acquired lock", key=key, ttl=ttl)
                return True

            holder = await self.client.get(lock_key)
            if holder == self.owner:
                # Already ours: refresh the expiry
                await self.client.expire(lock_key, ttl)
                return True

            logger.debug("Failed to acquire lock (held elsewhere)", key=key)
            return False
        except Exception as e:
            logger.error("Failed to acquire lock", key=key, error=str(e))
            raise

    async def release_lock(self, key: str) -> None:
        """Release distributed lock if this instance holds it."""
        try:
            lock_key = self._make_key(f"lock:{key}")
            if await self.client.get(lock_key) == self.owner:
                await self.client.delete(lock_key)
                logger.debug("Released lock", key=key)
        except Exception as e:
            logger.error("Failed to release lock", key=key, error=str(e))
            raise

    async def extend_lock(self, key: str, ttl: int) -> bool:
        """Extend lock timeout."""
        try:
            lock_key = self._make_key(f"lock:{key}")
            if await self.client.get(lock_key) != self.owner:
                logger.warning("Cannot extend lock not held by this worker", key=key)
                return False

            await self.client.expire(lock_key, ttl)
            return True
        except Exception as e:
            logger.error("Failed to extend lock", key=key, error=str(e))
            raise

    async def add_to_set(self, key: str, value: str) -> None:
        """Add value to set."""
        try:
            await self.client.sadd(self._make_key(key), value)
        except Exception as e:
            logger.error("Failed to add to set", key=key, error=str(e))
            raise

    async def is_in_set(self, key: str, value: str) -> bool:
        """Check if value is in set."""
        try:
            result = await self.client.sismember(self._make_key(key), value)
            return bool(result)
        except Exception as e:
            logger.error("Failed to check set membership", key=key, error=str(e))
            raise

"""Process-local cache of pools keyed by pair contract address."""

from typing import Dict, Iterable, List, Optional
import structlog

from models.market import PoolInfo
from repositories.base import MarketRepository
from services.task_scheduler import run_with_concurrency

logger = structlog.get_logger()


class PoolDirectory:
    """Pair contract -> resolved pool, backed by the market repository.

    Only hits are cached: an address that is not a known pool is read again
    on every lookup, so a pool created later in the same process is found.
    """

    def __init__(self, repository: MarketRepository, prefetch_limit: int = 24):
        self.repository = repository
        self.prefetch_limit = max(1, prefetch_limit)
        self._pools: Dict[str, PoolInfo] = {}

    def __len__(self) -> int:
        return len(self._pools)

    def remember(self, pool: PoolInfo) -> None:
        self._pools[pool.pair_contract] = pool

    async def lookup(self, address: Optional[str]) -> Optional[PoolInfo]:
        """Cache first, storage on miss."""
        if not address:
            return None

        cached = self._pools.get(address)
        if cached:
            return cached

        pool = await self.repository.get_pool_with_tokens(address)
        if pool:
            self._pools[address] = pool
        return pool

    async def prefetch(self, addresses: Iterable[str]) -> int:
        """Warm the cache for every uncached address; returns how many were loaded."""
        missing: List[str] = sorted({a for a in addresses if a and a not in self._pools})
        if not missing:
            return 0

        before = len(self._pools)
        await run_with_concurrency(
            [self._prefetch_task(address) for address in missing],
            self.prefetch_limit,
            name="pool_prefetch"
        )
        loaded = len(self._pools) - before

        logger.debug("Prefetched pools", requested=len(missing), loaded=loaded)
        return loaded

    def _prefetch_task(self, address: str):
        async def _task():
            try:
                return await self.lookup(address)
            except Exception as e:
                logger.warning("Pool prefetch failed", pair_contract=address, error=str(e))
                return None
        return _task

    def forget_denom(self, denom: str) -> int:
        """Drop cached pools referencing ``denom`` so exponents are re-read."""
        stale = [
            address for address, pool in self._pools.items()
            if denom in (pool.base_denom, pool.quote_denom)
        ]
        for address in stale:
            del self._pools[address]
        return len(stale)

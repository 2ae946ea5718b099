from abc import ABC, abstractmethod
from typing import Optional, List, Dict, Any
from datetime import datetime
from models.market import TokenInfo, PoolInfo, PoolState, Trade, OHLCVBar, IndexerProgress


class BaseRepository(ABC):
    """Base repository interface."""

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the data store."""
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Disconnect from the data store."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if the data store is healthy."""
        pass


class MarketRepository(BaseRepository):
    """Durable write and read surface for tokens, pools, trades, reserves and bars.

    Every write is an upsert keyed so that replaying a height only
    overwrites rows with identical values.
    """

    # Tokens

    @abstractmethod
    async def upsert_token_minimal(self, denom: str, exponent: int = 0) -> Optional[int]:
        """Insert a token if missing and return its id."""
        pass

    @abstractmethod
    async def get_token(self, denom: str) -> Optional[TokenInfo]:
        """Get token by denom."""
        pass

    @abstractmethod
    async def update_token_metadata(self, denom: str, fields: Dict[str, Any]) -> None:
        """Overwrite enrichment fields of an existing token."""
        pass

    # Pools

    @abstractmethod
    async def upsert_pool(self, pool: PoolInfo) -> Optional[int]:
        """Insert a pool if its pair contract is unknown; return its pool id."""
        pass

    @abstractmethod
    async def get_pool_with_tokens(self, pair_contract: str) -> Optional[PoolInfo]:
        """Get a pool with base/quote exponents resolved."""
        pass

    @abstractmethod
    async def get_pool_by_id(self, pool_id: int) -> Optional[PoolInfo]:
        """Get a pool by its numeric id with exponents resolved."""
        pass

    @abstractmethod
    async def list_native_pools_for_token(self, base_denom: str) -> List[PoolInfo]:
        """Native-quoted pools whose base token is ``base_denom``."""
        pass

    # Trades and reserves

    @abstractmethod
    async def insert_trade(self, trade: Trade) -> bool:
        """Insert a trade; return False when its natural key already exists."""
        pass

    @abstractmethod
    async def upsert_pool_state(
        self,
        pool_id: int,
        base_denom: str,
        quote_denom: str,
        reserve1_denom: Optional[str],
        reserve1_amount: Optional[str],
        reserve2_denom: Optional[str],
        reserve2_amount: Optional[str],
        height: Optional[int] = None,
        updated_at: Optional[datetime] = None,
    ) -> None:
        """Overwrite the latest reserves of a pool."""
        pass

    @abstractmethod
    async def get_pool_state(self, pool_id: int) -> Optional[PoolState]:
        """Get latest reserves of a pool."""
        pass

    # OHLCV

    @abstractmethod
    async def upsert_ohlcv_1m(
        self,
        pool_id: int,
        bucket_start: datetime,
        price: float,
        volume_native: float,
        trade_increment: int,
        trade_key: str,
    ) -> bool:
        """Merge one trade into its 1-minute bar; False if ``trade_key`` was already applied."""
        pass

    @abstractmethod
    async def get_ohlcv_1m(self, pool_ids: List[int], start: datetime, end: datetime) -> List[OHLCVBar]:
        """1-minute bars with ``start <= bucket_start < end``, ordered by bucket."""
        pass

    @abstractmethod
    async def get_last_close_before(self, pool_ids: List[int], before: datetime) -> Optional[float]:
        """Close of the latest bar strictly before ``before``."""
        pass


class ProgressRepository(BaseRepository):
    """Progress tracking repository interface."""

    @abstractmethod
    async def get_progress(self, indexer_type: str) -> Optional[IndexerProgress]:
        """Get indexer progress."""
        pass

    @abstractmethod
    async def update_progress(
        self,
        indexer_type: str,
        last_processed_height: int,
        status: Optional[str] = None,
        error_message: Optional[str] = None
    ) -> None:
        """Update indexer progress."""
        pass

    @abstractmethod
    async def delete_progress(self, indexer_type: str) -> bool:
        """Delete indexer progress."""
        pass


class CacheRepository(BaseRepository):
    """Cache repository interface."""

    @abstractmethod
    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        """Set cache value."""
        pass

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Get cache value."""
        pass

    @abstractmethod
    async def acquire_lock(self, key: str, ttl: int) -> bool:
        """Acquire distributed lock."""
        pass

    @abstractmethod
    async def release_lock(self, key: str) -> None:
        """Release distributed lock."""
        pass

    @abstractmethod
    async def extend_lock(self, key: str, ttl: int) -> bool:
        """Extend lock timeout."""
        pass

    @abstractmethod
    async def add_to_set(self, key: str, value: str) -> None:
        """Add value to set."""
        pass

    @abstractmethod
    async def is_in_set(self, key: str, value: str) -> bool:
        """Check if value is in set."""
        pass

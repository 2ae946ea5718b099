"""Gap-free candles at any timeframe from stored 1-minute bars."""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple
from pydantic import BaseModel
import structlog

from models.market import OHLCVBar
from repositories.base import MarketRepository
from utils.decimal_utils import to_display

logger = structlog.get_logger()

TIMEFRAMES: Dict[str, int] = {
    "1m": 60,
    "5m": 300,
    "15m": 900,
    "30m": 1800,
    "1h": 3600,
    "2h": 7200,
    "4h": 14400,
    "8h": 28800,
    "12h": 43200,
    "1d": 86400,
    "3d": 259200,
    "5d": 432000,
    "1w": 604800,
    "1mth": 2592000,   # 30d
    "3mth": 7776000,   # 90d
}


def ensure_timeframe(timeframe: Optional[str]) -> str:
    """Normalized timeframe key; unknown values fall back to ``1m``."""
    key = str(timeframe or "1m").strip().lower()
    return key if key in TIMEFRAMES else "1m"


class FillPolicy(str, Enum):
    PREV = "prev"
    ZERO = "zero"
    NONE = "none"


@dataclass(frozen=True)
class CandleScope:
    """A single pool, or every native-quoted pool of a token."""

    pool_id: Optional[int] = None
    denom: Optional[str] = None

    @classmethod
    def pool(cls, pool_id: int) -> "CandleScope":
        return cls(pool_id=pool_id)

    @classmethod
    def token(cls, denom: str) -> "CandleScope":
        return cls(denom=denom)

    @property
    def is_token(self) -> bool:
        return self.denom is not None


class Candle(BaseModel):
    ts: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float
    trades: int


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def merge_minute_bars(bars: List[OHLCVBar]) -> List[OHLCVBar]:
    """Collapse same-minute bars of different pools into one bar per minute.

    High is the max, low the min, volume and trades are summed; open and
    close come from the pool that traded the most volume in that minute.
    """
    by_minute: Dict[datetime, List[OHLCVBar]] = {}
    for bar in bars:
        by_minute.setdefault(_as_utc(bar.bucket_start), []).append(bar)

    merged = []
    for minute in sorted(by_minute):
        group = by_minute[minute]
        if len(group) == 1:
            merged.append(group[0])
            continue
        lead = max(group, key=lambda b: b.volume_native)
        merged.append(OHLCVBar(
            pool_id=None,
            bucket_start=minute,
            open=lead.open,
            high=max(b.high for b in group),
            low=min(b.low for b in group),
            close=lead.close,
            volume_native=sum(b.volume_native for b in group),
            trade_count=sum(b.trade_count for b in group),
        ))
    return merged


class OHLCVAggregator:
    """Reads 1-minute bars and buckets them into continuous candle series."""

    # Display exponent assumed when a token has none recorded
    DEFAULT_SUPPLY_EXPONENT = 6

    def __init__(self, repository: MarketRepository):
        self.repository = repository

    async def _resolve_scope(self, scope: CandleScope) -> Tuple[List[int], Optional[str]]:
        """Pool ids of the scope and the denom whose supply prices its market cap."""
        if scope.is_token:
            pools = await self.repository.list_native_pools_for_token(scope.denom)
            return [p.pool_id for p in pools if p.pool_id is not None], scope.denom
        if scope.pool_id is None:
            return [], None
        pool = await self.repository.get_pool_by_id(scope.pool_id)
        if pool is None:
            return [], None
        return [scope.pool_id], pool.base_denom

    async def circulating_supply(self, denom: Optional[str]) -> Optional[float]:
        """Stored total supply of ``denom`` in display units, None when unknown."""
        if denom is None:
            return None
        token = await self.repository.get_token(denom)
        if token is None or not token.total_supply_base:
            return None
        supply = to_display(token.total_supply_base, token.exponent or self.DEFAULT_SUPPLY_EXPONENT)
        return float(supply) if supply is not None else None

    async def get_candles(
        self,
        scope: CandleScope,
        timeframe: str = "1m",
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        mode: str = "price",
        unit: str = "native",
        fill: str = "prev",
        circulating_supply: Optional[float] = None,
        native_usd: float = 1.0,
    ) -> List[Candle]:
        """Candles for ``[start, end)``.

        Buckets are ``step`` wide and counted from ``start``, so a window
        aligned to the step gives epoch-aligned candles and only minute bars
        inside the window are read. Empty buckets follow ``fill``: ``prev``
        repeats the last close (seeded from the latest bar before the window,
        zero when there is none), ``zero`` gives flat zero bars and ``none``
        omits them.

        ``mode="mcap"`` scales prices by ``circulating_supply``, falling back
        to the stored supply of the scope's base token. Without any known
        supply it returns no candles.
        """
        if start is None or end is None:
            raise ValueError("start and end are required")

        step = TIMEFRAMES[ensure_timeframe(timeframe)]
        try:
            policy = FillPolicy(str(fill).lower())
        except ValueError:
            policy = FillPolicy.PREV

        window_start = _as_utc(start).replace(microsecond=0)
        window_end = _as_utc(end)
        start_epoch = int(window_start.timestamp())
        end_epoch = int(window_end.timestamp())
        if end_epoch <= start_epoch:
            return []

        pool_ids, supply_denom = await self._resolve_scope(scope)
        if not pool_ids:
            return []

        price_factor = 1.0
        if mode == "mcap":
            if circulating_supply is None:
                circulating_supply = await self.circulating_supply(supply_denom)
            if circulating_supply is None:
                logger.warning("No circulating supply for market cap candles", denom=supply_denom)
                return []
            price_factor *= circulating_supply
        volume_factor = 1.0
        if unit == "usd":
            price_factor *= native_usd
            volume_factor *= native_usd

        bars = await self.repository.get_ohlcv_1m(pool_ids, window_start, window_end)
        if scope.is_token:
            bars = merge_minute_bars(bars)

        last_close = None
        if policy == FillPolicy.PREV:
            last_close = await self.repository.get_last_close_before(pool_ids, window_start)

        buckets: Dict[int, List[OHLCVBar]] = {}
        for bar in bars:
            ts = int(_as_utc(bar.bucket_start).timestamp())
            buckets.setdefault(start_epoch + (ts - start_epoch) // step * step, []).append(bar)

        candles: List[Candle] = []
        for ts in range(start_epoch, end_epoch, step):
            group = buckets.get(ts)
            if group:
                open_, close = group[0].open, group[-1].close
                high = max(b.high for b in group)
                low = min(b.low for b in group)
                volume = sum(b.volume_native for b in group)
                trades = sum(b.trade_count for b in group)
                last_close = close
            elif policy == FillPolicy.NONE:
                continue
            elif policy == FillPolicy.PREV and last_close is not None:
                open_ = high = low = close = last_close
                volume, trades = 0.0, 0
            else:
                open_ = high = low = close = 0.0
                volume, trades = 0.0, 0

            candles.append(Candle(
                ts=datetime.fromtimestamp(ts, tz=timezone.utc),
                open=open_ * price_factor,
                high=high * price_factor,
                low=low * price_factor,
                close=close * price_factor,
                volume=volume * volume_factor,
                trades=trades,
            ))

        logger.debug("Built candles",
                     pools=len(pool_ids),
                     timeframe=timeframe,
                     minute_bars=len(bars),
                     candles=len(candles),
                     fill=policy.value)
        return candles

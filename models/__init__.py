"""Models for the ZIG DEX indexer."""

from .market import (
    TokenInfo,
    PoolInfo,
    PoolState,
    Trade,
    TradeAction,
    TradeDirection,
    OHLCVBar,
    IndexerProgress
)
from .events import (
    TxEvent,
    Block,
    BlockResults,
    ReserveSnapshot,
    CreatePairAction,
    SwapAction,
    LiquidityAction,
    TxActions
)

__all__ = [
    "TokenInfo",
    "PoolInfo",
    "PoolState",
    "Trade",
    "TradeAction",
    "TradeDirection",
    "OHLCVBar",
    "IndexerProgress",
    "TxEvent",
    "Block",
    "BlockResults",
    "ReserveSnapshot",
    "CreatePairAction",
    "SwapAction",
    "LiquidityAction",
    "TxActions"
]

from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime, timezone
from enum import Enum


class TradeAction(str, Enum):
    """Kinds of pool actions recorded as trades."""
    SWAP = "swap"
    PROVIDE = "provide"
    WITHDRAW = "withdraw"


class TradeDirection(str, Enum):
    """Trade direction relative to the pool's base token."""
    BUY = "buy"
    SELL = "sell"
    PROVIDE = "provide"
    WITHDRAW = "withdraw"


class TokenInfo(BaseModel):
    """Token row; display metadata is owned by the enrichment job."""

    denom: str = Field(..., description="Bank denom (primary key)")
    token_id: Optional[int] = Field(None, description="Internal numeric id")
    exponent: int = Field(default=0, description="Decimal exponent of the display unit")
    name: Optional[str] = Field(None, description="Token name")
    symbol: Optional[str] = Field(None, description="Ticker symbol")
    display: Optional[str] = Field(None, description="Display denom")
    image_uri: Optional[str] = Field(None, description="Logo URI")
    type: Optional[str] = Field(None, description="native, factory, ibc or cw20")

    # Raw integer supplies kept as strings to avoid 64-bit limits
    total_supply_base: Optional[str] = Field(None, description="Circulating supply in base units")
    max_supply_base: Optional[str] = Field(None, description="Max supply in base units")

    created_at: Optional[datetime] = Field(None, description="Database creation timestamp")
    updated_at: Optional[datetime] = Field(None, description="Database update timestamp")


class PoolInfo(BaseModel):
    """Liquidity pool created by the DEX factory."""

    # Identity
    pair_contract: str = Field(..., description="Pair contract address")
    pool_id: Optional[int] = Field(None, description="Internal numeric id, assigned on first insert")

    # Fixed at creation, never mutated
    base_denom: str = Field(..., description="Base token denom")
    quote_denom: str = Field(..., description="Quote token denom")
    pair_type: str = Field(default="xyk", description="Pair type, encodes the fee tier")
    is_native_quote: bool = Field(default=False, description="Quote asset is the chain native denom")

    # Creation information
    created_at: datetime = Field(..., description="Block time of the create_pair tx")
    created_height: int = Field(..., description="Creation block height")
    created_tx_hash: Optional[str] = Field(None, description="Creation transaction hash")
    signer: Optional[str] = Field(None, description="Account that signed the create_pair message")

    # Resolved from the tokens collection on read
    base_exponent: int = Field(default=0, description="Base token exponent")
    quote_exponent: int = Field(default=0, description="Quote token exponent")


class PoolState(BaseModel):
    """Latest known reserves for a pool, overwritten on every pool event."""

    pool_id: int = Field(..., description="Pool id")
    base_denom: str = Field(..., description="Pool base denom")
    quote_denom: str = Field(..., description="Pool quote denom")

    reserve_asset1_denom: Optional[str] = Field(None, description="First reserve denom")
    reserve_asset1_amount: Optional[str] = Field(None, description="First reserve raw amount")
    reserve_asset2_denom: Optional[str] = Field(None, description="Second reserve denom")
    reserve_asset2_amount: Optional[str] = Field(None, description="Second reserve raw amount")

    updated_height: Optional[int] = Field(None, description="Height of the last update")
    updated_at: Optional[datetime] = Field(None, description="Block time of the last update")

    def reserves_for(self, base_denom: str) -> tuple[int, int]:
        """Return (base reserve, quote reserve) as raw integers, 0 when unknown."""
        r1 = int(self.reserve_asset1_amount) if self.reserve_asset1_amount else 0
        r2 = int(self.reserve_asset2_amount) if self.reserve_asset2_amount else 0
        if self.reserve_asset1_denom == base_denom:
            return r1, r2
        if self.reserve_asset2_denom == base_denom:
            return r2, r1
        return 0, 0


class Trade(BaseModel):
    """One swap or liquidity action. Write-once."""

    # Natural key: (tx_hash, pool_id, msg_index)
    tx_hash: Optional[str] = Field(None, description="Transaction hash")
    pool_id: int = Field(..., description="Pool id")
    msg_index: int = Field(..., description="Message index inside the transaction")

    pair_contract: str = Field(..., description="Pair contract address")
    action: TradeAction = Field(..., description="swap, provide or withdraw")
    direction: Optional[TradeDirection] = Field(None, description="buy/sell for swaps")

    offer_asset_denom: Optional[str] = Field(None, description="Offered denom")
    offer_amount: Optional[str] = Field(None, description="Offered raw amount")
    ask_asset_denom: Optional[str] = Field(None, description="Asked denom")
    ask_amount: Optional[str] = Field(None, description="Asked raw amount")
    return_amount: Optional[str] = Field(None, description="Returned raw amount or LP share")
    is_router: bool = Field(default=False, description="Executed through the router contract")

    # Reserves snapshot after execution
    reserve_asset1_denom: Optional[str] = Field(None, description="First reserve denom")
    reserve_asset1_amount: Optional[str] = Field(None, description="First reserve raw amount")
    reserve_asset2_denom: Optional[str] = Field(None, description="Second reserve denom")
    reserve_asset2_amount: Optional[str] = Field(None, description="Second reserve raw amount")

    height: int = Field(..., description="Block height")
    signer: Optional[str] = Field(None, description="Signing wallet")
    created_at: datetime = Field(..., description="Block time")

    @property
    def natural_key(self) -> str:
        return f"{self.tx_hash}:{self.pool_id}:{self.msg_index}"


class OHLCVBar(BaseModel):
    """One OHLCV bar. Stored at 1-minute resolution."""

    pool_id: Optional[int] = Field(None, description="Pool id (None for aggregated scopes)")
    bucket_start: datetime = Field(..., description="Bucket start (UTC)")
    open: float = Field(..., description="Open price in quote display units")
    high: float = Field(..., description="High price")
    low: float = Field(..., description="Low price")
    close: float = Field(..., description="Close price")
    volume_native: float = Field(default=0.0, description="Volume in native display units")
    trade_count: int = Field(default=0, description="Number of trades")


class IndexerProgress(BaseModel):
    """Indexer progress tracking model."""

    indexer_type: str = Field(..., description="Type of indexer (blocks)")
    last_processed_height: int = Field(..., description="Last successfully processed height")

    status: str = Field(default="running", description="Current indexer status")
    error_message: Optional[str] = Field(None, description="Last error message")

    started_at: Optional[datetime] = Field(None, description="When indexing started")
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), description="Last update time")

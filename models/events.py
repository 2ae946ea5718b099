"""Typed records produced by block unwrapping and event extraction."""

from pydantic import BaseModel, Field
from typing import Dict, List, Optional, Tuple
from datetime import datetime

from models.market import TradeAction


class TxEvent(BaseModel):
    """One ABCI event with its attributes in emission order.

    Keys may repeat; lookups return the first matching value.
    """

    type: str
    attributes: List[Tuple[str, str]] = Field(default_factory=list)

    def get(self, key: str) -> Optional[str]:
        """Return the first value stored under ``key``, or None."""
        for k, v in self.attributes:
            if k == key:
                return v
        return None

    def get_first(self, *keys: str) -> Optional[str]:
        """Try ``keys`` in order and return the first non-empty value."""
        for key in keys:
            value = self.get(key)
            if value:
                return value
        return None


class Block(BaseModel):
    """Block header data and raw transactions for one height."""

    height: int
    timestamp: datetime
    txs: List[str] = Field(default_factory=list, description="Base64 encoded transactions")
    tx_hashes: List[str] = Field(default_factory=list)


class BlockResults(BaseModel):
    """Per-transaction event lists for one height."""

    height: int
    txs_events: List[List[TxEvent]] = Field(default_factory=list)


class ReserveSnapshot(BaseModel):
    """Resolved reserve pair, raw integer strings."""

    asset1_denom: Optional[str] = None
    asset1_amount: Optional[str] = None
    asset2_denom: Optional[str] = None
    asset2_amount: Optional[str] = None

    @property
    def complete(self) -> bool:
        return all([self.asset1_denom, self.asset1_amount, self.asset2_denom, self.asset2_amount])


class CreatePairAction(BaseModel):
    """Factory-honored create_pair."""

    pair_contract: str
    base_denom: str
    quote_denom: str
    pair_type: str = "xyk"
    signer: Optional[str] = None


class SwapAction(BaseModel):
    """Swap emitted by a pair contract."""

    pair_contract: str
    offer_asset_denom: Optional[str] = None
    ask_asset_denom: Optional[str] = None
    offer_amount: Optional[str] = None
    ask_amount: Optional[str] = None
    return_amount: Optional[str] = None
    reserves: ReserveSnapshot = Field(default_factory=ReserveSnapshot)
    msg_index: int
    signer: Optional[str] = None
    pool_sender: Optional[str] = None
    is_router: bool = False


class LiquidityAction(BaseModel):
    """provide_liquidity / withdraw_liquidity emitted by a pair contract."""

    pair_contract: str
    action: TradeAction
    share: Optional[str] = None
    reserves: ReserveSnapshot = Field(default_factory=ReserveSnapshot)
    msg_index: int
    signer: Optional[str] = None


class TxActions(BaseModel):
    """Everything extracted from one transaction."""

    index: int
    tx_hash: Optional[str] = None
    create_pairs: List[CreatePairAction] = Field(default_factory=list)
    swaps: List[SwapAction] = Field(default_factory=list)
    liquidity: List[LiquidityAction] = Field(default_factory=list)
    signers: Dict[int, str] = Field(default_factory=dict)

    @property
    def action_count(self) -> int:
        return len(self.create_pairs) + len(self.swaps) + len(self.liquidity)

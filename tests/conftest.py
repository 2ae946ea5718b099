"""Shared fixtures: in-memory repositories, a scripted RPC client and event builders."""

import base64
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest

from models.market import IndexerProgress, OHLCVBar, PoolInfo, PoolState, TokenInfo, Trade
from repositories.base import CacheRepository, MarketRepository, ProgressRepository

FACTORY = "zig1factory"
ROUTER = "zig1router"
NATIVE = "uzig"


class InMemoryMarketRepository(MarketRepository):
    """Dict-backed store with the same upsert semantics as the Mongo one."""

    def __init__(self):
        self.tokens: Dict[str, TokenInfo] = {}
        self.pools: Dict[str, PoolInfo] = {}
        self.trades: Dict[Tuple[Optional[str], int, int], Trade] = {}
        self.pool_states: Dict[int, PoolState] = {}
        self.bars: Dict[Tuple[int, datetime], Dict[str, Any]] = {}
        self._counters: Dict[str, int] = {}

        self.pool_reads = 0
        self.fail_pool_reads: Set[str] = set()

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    async def health_check(self) -> bool:
        return True

    def _next_id(self, name: str) -> int:
        self._counters[name] = self._counters.get(name, 0) + 1
        return self._counters[name]

    async def upsert_token_minimal(self, denom: str, exponent: int = 0) -> Optional[int]:
        if denom not in self.tokens:
            self.tokens[denom] = TokenInfo(denom=denom, token_id=self._next_id("tokens"), exponent=exponent)
        return self.tokens[denom].token_id

    async def get_token(self, denom: str) -> Optional[TokenInfo]:
        return self.tokens.get(denom)

    async def update_token_metadata(self, denom: str, fields: Dict[str, Any]) -> None:
        token = self.tokens.get(denom)
        if token:
            self.tokens[denom] = token.model_copy(update=fields)

    async def upsert_pool(self, pool: PoolInfo) -> Optional[int]:
        if pool.pair_contract not in self.pools:
            self.pools[pool.pair_contract] = pool.model_copy(update={"pool_id": self._next_id("pools")})
        return self.pools[pool.pair_contract].pool_id

    def _resolved(self, pool: PoolInfo) -> PoolInfo:
        base = self.tokens.get(pool.base_denom)
        quote = self.tokens.get(pool.quote_denom)
        return pool.model_copy(update={
            "base_exponent": base.exponent if base else 0,
            "quote_exponent": quote.exponent if quote else 0,
        })

    async def get_pool_with_tokens(self, pair_contract: str) -> Optional[PoolInfo]:
        self.pool_reads += 1
        if pair_contract in self.fail_pool_reads:
            raise ConnectionError("storage unavailable")
        pool = self.pools.get(pair_contract)
        return self._resolved(pool) if pool else None

    async def get_pool_by_id(self, pool_id: int) -> Optional[PoolInfo]:
        for pool in self.pools.values():
            if pool.pool_id == pool_id:
                return self._resolved(pool)
        return None

    async def list_native_pools_for_token(self, base_denom: str) -> List[PoolInfo]:
        pools = [p for p in self.pools.values() if p.base_denom == base_denom and p.is_native_quote]
        return [self._resolved(p) for p in sorted(pools, key=lambda p: p.pool_id)]

    async def insert_trade(self, trade: Trade) -> bool:
        key = (trade.tx_hash, trade.pool_id, trade.msg_index)
        if key in self.trades:
            return False
        self.trades[key] = trade
        return True

    async def upsert_pool_state(self, pool_id, base_denom, quote_denom, reserve1_denom, reserve1_amount,
                                reserve2_denom, reserve2_amount, height=None, updated_at=None) -> None:
        self.pool_states[pool_id] = PoolState(
            pool_id=pool_id,
            base_denom=base_denom,
            quote_denom=quote_denom,
            reserve_asset1_denom=reserve1_denom,
            reserve_asset1_amount=reserve1_amount,
            reserve_asset2_denom=reserve2_denom,
            reserve_asset2_amount=reserve2_amount,
            updated_height=height,
            updated_at=updated_at,
        )

    async def get_pool_state(self, pool_id: int) -> Optional[PoolState]:
        return self.pool_states.get(pool_id)

    async def upsert_ohlcv_1m(self, pool_id, bucket_start, price, volume_native, trade_increment, trade_key) -> bool:
        bar = self.bars.get((pool_id, bucket_start))
        if bar is None:
            self.bars[(pool_id, bucket_start)] = {
                "open": price, "high": price, "low": price, "close": price,
                "volume_native": volume_native, "trade_count": trade_increment,
                "trade_keys": {trade_key},
            }
            return True
        if trade_key in bar["trade_keys"]:
            return False
        bar["high"] = max(bar["high"], price)
        bar["low"] = min(bar["low"], price)
        bar["close"] = price
        bar["volume_native"] += volume_native
        bar["trade_count"] += trade_increment
        bar["trade_keys"].add(trade_key)
        return True

    def _bar(self, pool_id: int, bucket: datetime) -> OHLCVBar:
        b = self.bars[(pool_id, bucket)]
        return OHLCVBar(
            pool_id=pool_id, bucket_start=bucket,
            open=b["open"], high=b["high"], low=b["low"], close=b["close"],
            volume_native=b["volume_native"], trade_count=b["trade_count"],
        )

    async def get_ohlcv_1m(self, pool_ids, start, end) -> List[OHLCVBar]:
        keys = sorted(
            (k for k in self.bars if k[0] in pool_ids and start <= k[1] < end),
            key=lambda k: (k[1], k[0])
        )
        return [self._bar(pid, bucket) for pid, bucket in keys]

    async def get_last_close_before(self, pool_ids, before) -> Optional[float]:
        keys = [k for k in self.bars if k[0] in pool_ids and k[1] < before]
        if not keys:
            return None
        latest = max(keys, key=lambda k: k[1])
        return self.bars[latest]["close"]

    # test helpers

    def add_bar(self, pool_id: int, bucket: datetime, o: float, h: float, l: float, c: float,
                volume: float = 1.0, trades: int = 1) -> None:
        self.bars[(pool_id, bucket)] = {
            "open": o, "high": h, "low": l, "close": c,
            "volume_native": volume, "trade_count": trades, "trade_keys": set(),
        }

    def add_pool(self, pair_contract: str, base: str, quote: str = NATIVE, pair_type: str = "xyk",
                 base_exponent: int = 6, quote_exponent: int = 6) -> PoolInfo:
        self.tokens.setdefault(base, TokenInfo(denom=base, token_id=self._next_id("tokens"), exponent=base_exponent))
        self.tokens.setdefault(quote, TokenInfo(denom=quote, token_id=self._next_id("tokens"), exponent=quote_exponent))
        pool = PoolInfo(
            pair_contract=pair_contract,
            pool_id=self._next_id("pools"),
            base_denom=base,
            quote_denom=quote,
            pair_type=pair_type,
            is_native_quote=quote == NATIVE,
            created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
            created_height=1,
        )
        self.pools[pair_contract] = pool
        return self._resolved(pool)

    def set_reserves(self, pool: PoolInfo, base_amount: int, quote_amount: int) -> None:
        self.pool_states[pool.pool_id] = PoolState(
            pool_id=pool.pool_id,
            base_denom=pool.base_denom,
            quote_denom=pool.quote_denom,
            reserve_asset1_denom=pool.base_denom,
            reserve_asset1_amount=str(base_amount),
            reserve_asset2_denom=pool.quote_denom,
            reserve_asset2_amount=str(quote_amount),
        )


class InMemoryProgressRepository(ProgressRepository):
    def __init__(self):
        self.rows: Dict[str, IndexerProgress] = {}

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    async def health_check(self) -> bool:
        return True

    async def get_progress(self, indexer_type: str) -> Optional[IndexerProgress]:
        return self.rows.get(indexer_type)

    async def update_progress(self, indexer_type, last_processed_height, status=None, error_message=None) -> None:
        current = self.rows.get(indexer_type)
        self.rows[indexer_type] = IndexerProgress(
            indexer_type=indexer_type,
            last_processed_height=last_processed_height,
            status=status or (current.status if current else "running"),
            error_message=error_message if error_message is not None else (current.error_message if current else None),
        )

    async def delete_progress(self, indexer_type: str) -> bool:
        return self.rows.pop(indexer_type, None) is not None


class FakeCache(CacheRepository):
    def __init__(self):
        self.values: Dict[str, str] = {}
        self.sets: Dict[str, Set[str]] = {}
        self.locks: Set[str] = set()

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    async def health_check(self) -> bool:
        return True

    async def set(self, key, value, ttl=None) -> None:
        self.values[key] = value

    async def get(self, key):
        return self.values.get(key)

    async def acquire_lock(self, key, ttl) -> bool:
        self.locks.add(key)
        return True

    async def release_lock(self, key) -> None:
        self.locks.discard(key)

    async def extend_lock(self, key, ttl) -> bool:
        return key in self.locks

    async def add_to_set(self, key, value) -> None:
        self.sets.setdefault(key, set()).add(value)

    async def is_in_set(self, key, value) -> bool:
        return value in self.sets.get(key, set())


class ScriptedBlockchain:
    """Serves canned /block and /block_results payloads by height."""

    def __init__(self):
        self.blocks: Dict[int, Dict[str, Any]] = {}
        self.results: Dict[int, Dict[str, Any]] = {}
        self.latest = 0

    def add_height(self, height: int, time: str, txs: List[List[Dict[str, Any]]]) -> None:
        raw_txs = [base64.b64encode(f"tx-{height}-{i}".encode()).decode() for i in range(len(txs))]
        self.blocks[height] = {
            "jsonrpc": "2.0", "id": -1,
            "result": {"block": {"header": {"height": str(height), "time": time}, "data": {"txs": raw_txs}}},
        }
        self.results[height] = {
            "jsonrpc": "2.0", "id": -1,
            "result": {"height": str(height), "txs_results": [{"code": 0, "events": evs} for evs in txs]},
        }
        self.latest = max(self.latest, height)

    async def get_block(self, height: int) -> Dict[str, Any]:
        return self.blocks.get(height, {"result": {"block": None}})

    async def get_block_results(self, height: int) -> Dict[str, Any]:
        return self.results.get(height, {"result": {"txs_results": []}})

    async def get_latest_height(self) -> int:
        return self.latest


def event(event_type: str, *attributes: Tuple[str, str]) -> Dict[str, Any]:
    """Raw ABCI event as it appears in block_results."""
    return {"type": event_type, "attributes": [{"key": k, "value": v, "index": True} for k, v in attributes]}


def create_pair_events(pair_contract: str, pair: str, pair_type: str = "xyk", sender: str = "zig1creator") -> List[Dict[str, Any]]:
    return [
        event("message", ("action", "/cosmwasm.wasm.v1.MsgExecuteContract"), ("sender", sender), ("msg_index", "0")),
        event("wasm", ("_contract_address", FACTORY), ("action", "create_pair"), ("pair", pair),
              ("pair_type", pair_type), ("msg_index", "0")),
        event("instantiate", ("_contract_address", pair_contract), ("code_id", "7"), ("msg_index", "0")),
        event("wasm", ("_contract_address", FACTORY), ("action", "register"),
              ("pair_contract_addr", pair_contract), ("msg_index", "0")),
    ]


def swap_events(pair_contract: str, offer: str, ask: str, offer_amount: str, return_amount: str,
                reserves: List[Tuple[str, str]], packed: bool = False, sender: str = "zig1trader",
                msg_index: str = "0") -> List[Dict[str, Any]]:
    attrs = [
        ("_contract_address", pair_contract), ("action", "swap"), ("sender", sender),
        ("offer_asset", offer), ("ask_asset", ask), ("offer_amount", offer_amount),
        ("return_amount", return_amount), ("msg_index", msg_index),
    ]
    if packed:
        attrs.append(("reserves", ",".join(f"{d}:{a}" for d, a in reserves)))
    else:
        for i, (denom, amount) in enumerate(reserves, start=1):
            attrs.append((f"reserve_asset{i}_denom", denom))
            attrs.append((f"reserve_asset{i}_amount", amount))
    return [
        event("message", ("sender", sender), ("msg_index", msg_index)),
        event("wasm", *attrs),
    ]


@pytest.fixture
def repo():
    return InMemoryMarketRepository()


@pytest.fixture
def progress_repo():
    return InMemoryProgressRepository()


@pytest.fixture
def cache():
    return FakeCache()


@pytest.fixture
def chain():
    return ScriptedBlockchain()

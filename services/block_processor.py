"""Per-height ingestion: fetch, extract, and write pools, trades, reserves and bars."""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Set
import asyncio
import structlog

from models.events import Block, CreatePairAction, LiquidityAction, SwapAction
from models.market import PoolInfo, Trade, TradeAction, TradeDirection
from repositories.base import MarketRepository
from services.blockchain_service import BlockchainService, unwrap_block, unwrap_block_results
from services.event_extractor import EventExtractor
from services.parsers.attributes import classify_direction
from services.pool_directory import PoolDirectory
from services.task_scheduler import LowPriorityQueue, Task, TaskBatch
from services.token_metadata import TokenMetadataService
from utils.decimal_utils import price_from_reserves, to_display

logger = structlog.get_logger()


class BlockProcessingError(Exception):
    """A height could not be processed and must be retried as a whole."""


@dataclass
class BlockStats:
    height: int
    tx_count: int = 0
    create_pairs: int = 0
    swaps: int = 0
    liquidity: int = 0
    tasks_executed: int = 0
    tasks_failed: int = 0
    flushes: int = 0
    peak_pending: int = 0
    trades_inserted: int = 0
    ohlcv_updates: int = 0
    unknown_pools: int = 0
    metadata_tasks: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class _HeightRun:
    """Mutable state of one ``process_height`` call."""

    block: Block
    stats: BlockStats
    creates: TaskBatch
    primary: TaskBatch
    prefetch: Set[str] = field(default_factory=set)

    @property
    def pending(self) -> int:
        return len(self.creates) + len(self.primary)


def minute_bucket(ts: datetime) -> datetime:
    return ts.replace(second=0, microsecond=0)


class BlockProcessor:
    """Turns one height into idempotent store writes.

    Writes for a height run in stages: create_pair tasks first, then a
    prefetch of every pool the queued swaps and liquidity events reference,
    then those primary tasks. A stage runs whenever the pending task count
    reaches ``max_pending`` and once more after the last transaction.
    Token metadata is enriched last, through a deduplicating low-priority
    queue that lives as long as the processor.
    """

    def __init__(
        self,
        blockchain: BlockchainService,
        repository: MarketRepository,
        directory: PoolDirectory,
        extractor: EventExtractor,
        metadata: Optional[TokenMetadataService] = None,
        metadata_queue: Optional[LowPriorityQueue] = None,
        concurrency: int = 12,
        max_pending: int = 5000,
        native_denom: str = "uzig",
        native_exponent: int = 6,
    ):
        self.blockchain = blockchain
        self.repository = repository
        self.directory = directory
        self.extractor = extractor
        self.metadata = metadata
        if metadata_queue is None:
            metadata_queue = LowPriorityQueue(min(4, concurrency), name="token_metadata")
        self.metadata_queue = metadata_queue
        self.concurrency = max(1, concurrency)
        self.max_pending = max(1, max_pending)
        self.native_denom = native_denom
        self.native_exponent = native_exponent

    async def process_height(self, height: int) -> BlockStats:
        """Process every DEX action of ``height``.

        Raises BlockProcessingError when the block has no header. Individual
        task failures are logged and counted, never raised.
        """
        block_json, results_json = await asyncio.gather(
            self.blockchain.get_block(height),
            self.blockchain.get_block_results(height),
        )
        block = unwrap_block(block_json)
        if not block:
            raise BlockProcessingError(f"block {height}: missing header")
        results = unwrap_block_results(results_json, height)

        stats = BlockStats(height=height, tx_count=max(len(block.tx_hashes), len(results.txs_events)))
        run = _HeightRun(
            block=block,
            stats=stats,
            creates=TaskBatch(self.concurrency, name="create_pair"),
            primary=TaskBatch(self.concurrency, name="primary"),
        )

        for tx in self.extractor.iter_block(block, results):
            if not tx.action_count:
                continue

            for action in tx.create_pairs:
                stats.create_pairs += 1
                await self._enqueue(run, run.creates, self._create_pair_task(run, tx.tx_hash, action))
                self._submit_metadata(action.base_denom)
                self._submit_metadata(action.quote_denom)

            for action in tx.swaps:
                stats.swaps += 1
                run.prefetch.add(action.pair_contract)
                await self._enqueue(run, run.primary, self._swap_task(run, tx.tx_hash, action))

            for action in tx.liquidity:
                stats.liquidity += 1
                run.prefetch.add(action.pair_contract)
                await self._enqueue(run, run.primary, self._liquidity_task(run, tx.tx_hash, action))

        await self._flush_stage(run)

        if len(self.metadata_queue):
            stats.metadata_tasks = len(self.metadata_queue)
            await self.metadata_queue.drain()

        stats.tasks_executed = run.creates.executed + run.primary.executed
        stats.tasks_failed = run.creates.failed + run.primary.failed

        logger.info("Processed block",
                    height=height,
                    txs=stats.tx_count,
                    create_pairs=stats.create_pairs,
                    swaps=stats.swaps,
                    liquidity=stats.liquidity,
                    failed=stats.tasks_failed,
                    flushes=stats.flushes)
        return stats

    async def _enqueue(self, run: _HeightRun, batch: TaskBatch, task: Task) -> None:
        batch.add(task)
        run.stats.peak_pending = max(run.stats.peak_pending, run.pending)
        if run.pending >= self.max_pending:
            logger.debug("Pending task threshold reached", height=run.stats.height, pending=run.pending)
            await self._flush_stage(run)

    async def _flush_stage(self, run: _HeightRun) -> None:
        if not run.pending:
            return
        run.stats.flushes += 1

        await run.creates.flush()
        if run.prefetch:
            await self.directory.prefetch(run.prefetch)
            run.prefetch = set()
        await run.primary.flush()

    def _submit_metadata(self, denom: str) -> None:
        if not self.metadata or not denom:
            return
        self.metadata_queue.submit(denom, lambda: self.metadata.enrich(denom))

    def _initial_exponent(self, denom: str) -> int:
        return self.native_exponent if denom == self.native_denom else 0

    # ------------------------------------------------------------------ tasks

    def _create_pair_task(self, run: _HeightRun, tx_hash: Optional[str], action: CreatePairAction) -> Task:
        block = run.block

        async def _task():
            await self.repository.upsert_token_minimal(action.base_denom, self._initial_exponent(action.base_denom))
            await self.repository.upsert_token_minimal(action.quote_denom, self._initial_exponent(action.quote_denom))

            await self.repository.upsert_pool(PoolInfo(
                pair_contract=action.pair_contract,
                base_denom=action.base_denom,
                quote_denom=action.quote_denom,
                pair_type=action.pair_type,
                is_native_quote=action.quote_denom == self.native_denom,
                created_at=block.timestamp,
                created_height=block.height,
                created_tx_hash=tx_hash,
                signer=action.signer,
            ))

            pool = await self.repository.get_pool_with_tokens(action.pair_contract)
            if pool:
                self.directory.remember(pool)
            return pool

        return _task

    def _trade(
        self,
        run: _HeightRun,
        tx_hash: Optional[str],
        pool: PoolInfo,
        action: TradeAction,
        direction: Optional[TradeDirection],
        source: Any,
        **fields: Any,
    ) -> Trade:
        reserves = source.reserves
        return Trade(
            tx_hash=tx_hash,
            pool_id=pool.pool_id,
            msg_index=source.msg_index,
            pair_contract=source.pair_contract,
            action=action,
            direction=direction,
            reserve_asset1_denom=reserves.asset1_denom,
            reserve_asset1_amount=reserves.asset1_amount,
            reserve_asset2_denom=reserves.asset2_denom,
            reserve_asset2_amount=reserves.asset2_amount,
            height=run.block.height,
            signer=source.signer,
            created_at=run.block.timestamp,
            **fields,
        )

    async def _write_pool_state(self, run: _HeightRun, pool: PoolInfo, trade: Trade) -> None:
        await self.repository.upsert_pool_state(
            pool.pool_id,
            pool.base_denom,
            pool.quote_denom,
            trade.reserve_asset1_denom,
            trade.reserve_asset1_amount,
            trade.reserve_asset2_denom,
            trade.reserve_asset2_amount,
            height=run.block.height,
            updated_at=run.block.timestamp,
        )

    def _swap_task(self, run: _HeightRun, tx_hash: Optional[str], action: SwapAction) -> Task:
        async def _task():
            pool = await self.directory.lookup(action.pair_contract)
            if not pool:
                run.stats.unknown_pools += 1
                logger.warning("Swap for unknown pool",
                               height=run.block.height,
                               tx_hash=tx_hash,
                               pair_contract=action.pair_contract)
                return None

            if not action.reserves.complete:
                logger.debug("Swap without a full reserve snapshot",
                             height=run.block.height,
                             tx_hash=tx_hash,
                             pair_contract=action.pair_contract)

            trade = self._trade(
                run, tx_hash, pool, TradeAction.SWAP,
                classify_direction(action.offer_asset_denom, pool.quote_denom),
                action,
                offer_asset_denom=action.offer_asset_denom,
                offer_amount=action.offer_amount,
                ask_asset_denom=action.ask_asset_denom,
                ask_amount=action.ask_amount,
                return_amount=action.return_amount,
                is_router=action.is_router,
            )
            if await self.repository.insert_trade(trade):
                run.stats.trades_inserted += 1
            await self._write_pool_state(run, pool, trade)

            if pool.is_native_quote:
                await self._record_ohlcv(run, pool, trade)
            return trade

        return _task

    def _liquidity_task(self, run: _HeightRun, tx_hash: Optional[str], action: LiquidityAction) -> Task:
        async def _task():
            pool = await self.directory.lookup(action.pair_contract)
            if not pool:
                run.stats.unknown_pools += 1
                logger.warning("Liquidity event for unknown pool",
                               height=run.block.height,
                               tx_hash=tx_hash,
                               pair_contract=action.pair_contract)
                return None

            direction = TradeDirection.PROVIDE if action.action == TradeAction.PROVIDE else TradeDirection.WITHDRAW
            trade = self._trade(
                run, tx_hash, pool, action.action, direction, action,
                return_amount=action.share,
            )
            if await self.repository.insert_trade(trade):
                run.stats.trades_inserted += 1
            await self._write_pool_state(run, pool, trade)
            return trade

        return _task

    async def _record_ohlcv(self, run: _HeightRun, pool: PoolInfo, trade: Trade) -> None:
        """Merge a native-quoted swap into its minute bar."""
        if not (trade.reserve_asset1_denom and trade.reserve_asset2_denom):
            return

        base_raw: Optional[str] = None
        quote_raw: Optional[str] = None
        if trade.reserve_asset1_denom == pool.base_denom:
            base_raw, quote_raw = trade.reserve_asset1_amount, trade.reserve_asset2_amount
        elif trade.reserve_asset2_denom == pool.base_denom:
            base_raw, quote_raw = trade.reserve_asset2_amount, trade.reserve_asset1_amount

        price = price_from_reserves(base_raw, quote_raw, pool.base_exponent, pool.quote_exponent)
        if price is None:
            return

        quote_leg = trade.offer_amount if trade.offer_asset_denom == pool.quote_denom else trade.return_amount
        volume = to_display(quote_leg, pool.quote_exponent) or Decimal(0)

        applied = await self.repository.upsert_ohlcv_1m(
            pool.pool_id,
            minute_bucket(run.block.timestamp),
            float(price),
            float(volume),
            1,
            trade.natural_key,
        )
        if applied:
            run.stats.ohlcv_updates += 1

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase, AsyncIOMotorCollection
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
import structlog
from repositories.base import MarketRepository, ProgressRepository
from models.market import TokenInfo, PoolInfo, PoolState, Trade, OHLCVBar, IndexerProgress


logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _strip_mongo_fields(doc: Dict[str, Any]) -> Dict[str, Any]:
    doc.pop("_id", None)
    return doc


class MongoMarketRepository(MarketRepository):
    """MongoDB implementation of the market state store."""

    def __init__(self, mongodb_url: str, database_name: str):
        self.mongodb_url = mongodb_url
        self.database_name = database_name
        self.client: Optional[AsyncIOMotorClient] = None
        self.db: Optional[AsyncIOMotorDatabase] = None

        # Collections
        self.tokens: Optional[AsyncIOMotorCollection] = None
        self.pools: Optional[AsyncIOMotorCollection] = None
        self.trades: Optional[AsyncIOMotorCollection] = None
        self.pool_state: Optional[AsyncIOMotorCollection] = None
        self.ohlcv_1m: Optional[AsyncIOMotorCollection] = None
        self.counters: Optional[AsyncIOMotorCollection] = None

    async def connect(self) -> None:
        """Connect to MongoDB."""
        try:
            self.client = AsyncIOMotorClient(self.mongodb_url, tz_aware=True)
            self.db = self.client[self.database_name]

            self.tokens = self.db.tokens
            self.pools = self.db.pools
            self.trades = self.db.trades
            self.pool_state = self.db.pool_state
            self.ohlcv_1m = self.db.ohlcv_1m
            self.counters = self.db.counters

            await self._create_indexes()

            logger.info("Connected to MongoDB", database=self.database_name)
        except Exception as e:
            logger.error("Failed to connect to MongoDB", error=str(e))
            raise

    async def disconnect(self) -> None:
        """Disconnect from MongoDB."""
        if self.client:
            self.client.close()
            logger.info("Disconnected from MongoDB")

    async def health_check(self) -> bool:
        """Check MongoDB health."""
        try:
            if not self.client:
                return False
            await self.client.admin.command('ping')
            return True
        except Exception as e:
            logger.error("MongoDB health check failed", error=str(e))
            return False

    async def _create_indexes(self) -> None:
        """Create the unique keys every upsert relies on."""
        await self.tokens.create_index([("denom", 1)], unique=True)

        await self.pools.create_index([("pair_contract", 1)], unique=True)
        await self.pools.create_index([("pool_id", 1)], unique=True)
        await self.pools.create_index([("base_denom", 1), ("is_native_quote", 1)])

        await self.trades.create_index([("tx_hash", 1), ("pool_id", 1), ("msg_index", 1)], unique=True)
        await self.trades.create_index([("pool_id", 1), ("created_at", -1)])
        await self.trades.create_index([("height", -1)])

        await self.pool_state.create_index([("pool_id", 1)], unique=True)

        await self.ohlcv_1m.create_index([("pool_id", 1), ("bucket_start", 1)], unique=True)
        await self.ohlcv_1m.create_index([("bucket_start", -1)])

        logger.info("Created MongoDB indexes")

    async def _next_id(self, name: str) -> int:
        """Monotonic integer ids from the counters collection."""
        doc = await self.counters.find_one_and_update(
            {"_id": name},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER
        )
        return int(doc["seq"])

    # ------------------------------------------------------------------ tokens

    async def upsert_token_minimal(self, denom: str, exponent: int = 0) -> Optional[int]:
        """Insert a token row with only its denom and exponent, or return the existing id."""
        try:
            existing = await self.tokens.find_one({"denom": denom}, {"token_id": 1})
            if existing:
                return existing.get("token_id")

            token_id = await self._next_id("tokens")
            try:
                await self.tokens.update_one(
                    {"denom": denom},
                    {"$setOnInsert": {
                        "denom": denom,
                        "token_id": token_id,
                        "exponent": exponent,
                        "created_at": _utcnow(),
                    }},
                    upsert=True
                )
            except DuplicateKeyError:
                pass  # concurrent insert of the same denom

            doc = await self.tokens.find_one({"denom": denom}, {"token_id": 1})
            return doc.get("token_id") if doc else None
        except Exception as e:
            logger.error("Failed to upsert token", denom=denom, error=str(e))
            raise

    async def get_token(self, denom: str) -> Optional[TokenInfo]:
        """Get token by denom."""
        try:
            doc = await self.tokens.find_one({"denom": denom})
            return TokenInfo(**_strip_mongo_fields(doc)) if doc else None
        except Exception as e:
            logger.error("Failed to get token", denom=denom, error=str(e))
            raise

    async def update_token_metadata(self, denom: str, fields: Dict[str, Any]) -> None:
        """Overwrite enrichment fields of an existing token."""
        try:
            update = {k: v for k, v in fields.items() if k not in ("denom", "token_id")}
            update["updated_at"] = _utcnow()
            await self.tokens.update_one({"denom": denom}, {"$set": update})

            logger.debug("Updated token metadata", denom=denom, fields=list(update.keys()))
        except Exception as e:
            logger.error("Failed to update token metadata", denom=denom, error=str(e))
            raise

    # ------------------------------------------------------------------- pools

    async def upsert_pool(self, pool: PoolInfo) -> Optional[int]:
        """Insert-or-ignore by pair contract; creation fields are immutable."""
        try:
            existing = await self.pools.find_one({"pair_contract": pool.pair_contract}, {"pool_id": 1})
            if existing:
                return existing.get("pool_id")

            doc = pool.model_dump(exclude={"base_exponent", "quote_exponent"})
            doc["pool_id"] = await self._next_id("pools")
            doc["inserted_at"] = _utcnow()
            try:
                await self.pools.update_one(
                    {"pair_contract": pool.pair_contract},
                    {"$setOnInsert": doc},
                    upsert=True
                )
            except DuplicateKeyError:
                pass

            stored = await self.pools.find_one({"pair_contract": pool.pair_contract}, {"pool_id": 1})

            logger.info("Saved pool",
                        pair_contract=pool.pair_contract,
                        pool_id=stored.get("pool_id") if stored else None,
                        base_denom=pool.base_denom,
                        quote_denom=pool.quote_denom,
                        pair_type=pool.pair_type)
            return stored.get("pool_id") if stored else None
        except Exception as e:
            logger.error("Failed to save pool",
                         pair_contract=pool.pair_contract,
                         error=str(e))
            raise

    async def _exponents(self, denoms: List[str]) -> Dict[str, int]:
        cursor = self.tokens.find({"denom": {"$in": list(set(denoms))}}, {"denom": 1, "exponent": 1})
        exponents = {}
        async for doc in cursor:
            exponents[doc["denom"]] = int(doc.get("exponent") or 0)
        return exponents

    def _pool_from_doc(self, doc: Dict[str, Any], exponents: Dict[str, int]) -> PoolInfo:
        doc = _strip_mongo_fields(doc)
        doc.pop("inserted_at", None)
        doc["base_exponent"] = exponents.get(doc["base_denom"], 0)
        doc["quote_exponent"] = exponents.get(doc["quote_denom"], 0)
        return PoolInfo(**doc)

    async def get_pool_with_tokens(self, pair_contract: str) -> Optional[PoolInfo]:
        """Get a pool with its token exponents resolved."""
        try:
            doc = await self.pools.find_one({"pair_contract": pair_contract})
            if not doc:
                return None
            exponents = await self._exponents([doc["base_denom"], doc["quote_denom"]])
            return self._pool_from_doc(doc, exponents)
        except Exception as e:
            logger.error("Failed to get pool", pair_contract=pair_contract, error=str(e))
            raise

    async def get_pool_by_id(self, pool_id: int) -> Optional[PoolInfo]:
        try:
            doc = await self.pools.find_one({"pool_id": pool_id})
            if not doc:
                return None
            exponents = await self._exponents([doc["base_denom"], doc["quote_denom"]])
            return self._pool_from_doc(doc, exponents)
        except Exception as e:
            logger.error("Failed to get pool", pool_id=pool_id, error=str(e))
            raise

    async def list_native_pools_for_token(self, base_denom: str) -> List[PoolInfo]:
        """Native-quoted pools of a base token, oldest first."""
        try:
            cursor = self.pools.find(
                {"base_denom": base_denom, "is_native_quote": True}
            ).sort("pool_id", 1)
            docs = [doc async for doc in cursor]
            if not docs:
                return []

            denoms = [d["base_denom"] for d in docs] + [d["quote_denom"] for d in docs]
            exponents = await self._exponents(denoms)
            return [self._pool_from_doc(doc, exponents) for doc in docs]
        except Exception as e:
            logger.error("Failed to list pools for token", base_denom=base_denom, error=str(e))
            raise

    # ------------------------------------------------------ trades & reserves

    async def insert_trade(self, trade: Trade) -> bool:
        """Write-once insert keyed by (tx_hash, pool_id, msg_index)."""
        try:
            doc = trade.model_dump()
            doc["inserted_at"] = _utcnow()

            try:
                result = await self.trades.update_one(
                    {"tx_hash": trade.tx_hash, "pool_id": trade.pool_id, "msg_index": trade.msg_index},
                    {"$setOnInsert": doc},
                    upsert=True
                )
            except DuplicateKeyError:
                return False

            inserted = result.upserted_id is not None
            logger.debug("Saved trade",
                         tx_hash=trade.tx_hash,
                         pool_id=trade.pool_id,
                         msg_index=trade.msg_index,
                         action=trade.action,
                         inserted=inserted)
            return inserted
        except Exception as e:
            logger.error("Failed to save trade",
                         tx_hash=trade.tx_hash,
                         pool_id=trade.pool_id,
                         error=str(e))
            raise

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
        """Overwrite-by-pool-id."""
        try:
            await self.pool_state.update_one(
                {"pool_id": pool_id},
                {"$set": {
                    "base_denom": base_denom,
                    "quote_denom": quote_denom,
                    "reserve_asset1_denom": reserve1_denom,
                    "reserve_asset1_amount": reserve1_amount,
                    "reserve_asset2_denom": reserve2_denom,
                    "reserve_asset2_amount": reserve2_amount,
                    "updated_height": height,
                    "updated_at": updated_at,
                }},
                upsert=True
            )
        except Exception as e:
            logger.error("Failed to upsert pool state", pool_id=pool_id, error=str(e))
            raise

    async def get_pool_state(self, pool_id: int) -> Optional[PoolState]:
        """Get latest reserves of a pool."""
        try:
            doc = await self.pool_state.find_one({"pool_id": pool_id})
            return PoolState(**_strip_mongo_fields(doc)) if doc else None
        except Exception as e:
            logger.error("Failed to get pool state", pool_id=pool_id, error=str(e))
            raise

    # ------------------------------------------------------------------- ohlcv

    async def upsert_ohlcv_1m(
        self,
        pool_id: int,
        bucket_start: datetime,
        price: float,
        volume_native: float,
        trade_increment: int,
        trade_key: str,
    ) -> bool:
        """Merge a trade into its minute bar.

        First trade sets open, every trade moves high/low/close and adds to
        volume and count. The bar remembers applied trade keys, so the filter
        stops matching once a key is in and a replay changes nothing.
        """
        filter_doc = {"pool_id": pool_id, "bucket_start": bucket_start, "trade_keys": {"$ne": trade_key}}
        update = {
            "$setOnInsert": {"open": price},
            "$max": {"high": price},
            "$min": {"low": price},
            "$set": {"close": price, "updated_at": _utcnow()},
            "$inc": {"volume_native": volume_native, "trade_count": trade_increment},
            "$addToSet": {"trade_keys": trade_key},
        }
        try:
            try:
                result = await self.ohlcv_1m.update_one(filter_doc, update, upsert=True)
                return result.upserted_id is not None or result.modified_count > 0
            except DuplicateKeyError:
                # The bar exists: the key was applied already, or a concurrent
                # insert for the same minute won the race.
                result = await self.ohlcv_1m.update_one(filter_doc, update, upsert=False)
                return result.modified_count > 0
        except Exception as e:
            logger.error("Failed to upsert OHLCV bar",
                         pool_id=pool_id,
                         bucket_start=bucket_start.isoformat(),
                         error=str(e))
            raise

    async def get_ohlcv_1m(self, pool_ids: List[int], start: datetime, end: datetime) -> List[OHLCVBar]:
        """1-minute bars in [start, end), ordered by bucket."""
        try:
            cursor = self.ohlcv_1m.find(
                {"pool_id": {"$in": pool_ids}, "bucket_start": {"$gte": start, "$lt": end}},
                {"trade_keys": 0}
            ).sort([("bucket_start", 1), ("pool_id", 1)])
            bars = []
            async for doc in cursor:
                bars.append(OHLCVBar(
                    pool_id=doc["pool_id"],
                    bucket_start=doc["bucket_start"],
                    open=float(doc["open"]),
                    high=float(doc["high"]),
                    low=float(doc["low"]),
                    close=float(doc["close"]),
                    volume_native=float(doc.get("volume_native") or 0),
                    trade_count=int(doc.get("trade_count") or 0),
                ))
            return bars
        except Exception as e:
            logger.error("Failed to get OHLCV bars", pool_ids=pool_ids, error=str(e))
            raise

    async def get_last_close_before(self, pool_ids: List[int], before: datetime) -> Optional[float]:
        """Close of the latest bar before ``before``."""
        try:
            doc = await self.ohlcv_1m.find_one(
                {"pool_id": {"$in": pool_ids}, "bucket_start": {"$lt": before}},
                {"close": 1},
                sort=[("bucket_start", -1)]
            )
            return float(doc["close"]) if doc else None
        except Exception as e:
            logger.error("Failed to get last close", pool_ids=pool_ids, error=str(e))
            raise


class MongoProgressRepository(ProgressRepository):
    """MongoDB implementation of progress repository."""

    def __init__(self, mongodb_url: str, database_name: str):
        self.mongodb_url = mongodb_url
        self.database_name = database_name
        self.client: Optional[AsyncIOMotorClient] = None
        self.db: Optional[AsyncIOMotorDatabase] = None
        self.progress: Optional[AsyncIOMotorCollection] = None

    async def connect(self) -> None:
        """Connect to MongoDB."""
        try:
            self.client = AsyncIOMotorClient(self.mongodb_url, tz_aware=True)
            self.db = self.client[self.database_name]
            self.progress = self.db.indexer_progress

            await self.progress.create_index([("indexer_type", 1)], unique=True)

            logger.info("Connected to MongoDB for progress tracking", database=self.database_name)
        except Exception as e:
            logger.error("Failed to connect to MongoDB for progress", error=str(e))
            raise

    async def disconnect(self) -> None:
        """Disconnect from MongoDB."""
        if self.client:
            self.client.close()

    async def health_check(self) -> bool:
        """Check MongoDB health."""
        try:
            if not self.client:
                return False
            await self.client.admin.command('ping')
            return True
        except Exception:
            return False

    async def get_progress(self, indexer_type: str) -> Optional[IndexerProgress]:
        """Get indexer progress."""
        try:
            doc = await self.progress.find_one({"indexer_type": indexer_type})
            if doc:
                doc.pop("_id", None)
                doc.pop("created_at", None)
                return IndexerProgress(**doc)
            return None
        except Exception as e:
            logger.error("Failed to get progress", error=str(e))
            raise

    async def delete_progress(self, indexer_type: str) -> bool:
        """Delete indexer progress."""
        try:
            result = await self.progress.delete_many({"indexer_type": indexer_type})

            logger.info("Deleted indexer progress",
                        indexer_type=indexer_type,
                        deleted_count=result.deleted_count)

            return result.deleted_count > 0
        except Exception as e:
            logger.error("Failed to delete progress", error=str(e))
            raise

    async def update_progress(
        self,
        indexer_type: str,
        last_processed_height: int,
        status: Optional[str] = None,
        error_message: Optional[str] = None
    ) -> None:
        """Update indexer progress."""
        try:
            update_doc = {
                "last_processed_height": last_processed_height,
                "updated_at": _utcnow()
            }
            if status:
                update_doc["status"] = status
            if error_message is not None:
                update_doc["error_message"] = error_message

            # Required fields only when creating the document
            set_on_insert = {
                "indexer_type": indexer_type,
                "started_at": _utcnow()
            }
            if not status:
                set_on_insert["status"] = "running"

            await self.progress.update_one(
                {"indexer_type": indexer_type},
                {
                    "$set": update_doc,
                    "$setOnInsert": set_on_insert
                },
                upsert=True
            )

            logger.debug("Updated indexer progress",
                         indexer_type=indexer_type,
                         last_processed_height=last_processed_height)
        except Exception as e:
            logger.error("Failed to update progress", error=str(e))
            raise

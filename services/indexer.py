import asyncio
from typing import Optional
import structlog

from config.settings import Settings
from repositories.base import CacheRepository, ProgressRepository
from services.block_processor import BlockProcessor, BlockStats
from services.blockchain_service import BlockchainService


logger = structlog.get_logger()


class IndexerService:
    """Sequential height loop around the block processor.

    Heights are processed strictly in order starting after the recorded
    progress. A failed height is retried after ``worker_retry_delay``; a
    redis lock keeps a second worker from ingesting the same chain.
    """

    INDEXER_TYPE = "blocks"
    LOCK_KEY = "block_ingest"
    HEARTBEAT_KEY = "last_height"

    def __init__(
        self,
        settings: Settings,
        blockchain: BlockchainService,
        processor: BlockProcessor,
        progress_repo: ProgressRepository,
        cache_repo: CacheRepository,
        from_height: Optional[int] = None,
    ):
        self.settings = settings
        self.blockchain = blockchain
        self.processor = processor
        self.progress_repo = progress_repo
        self.cache_repo = cache_repo
        self._from_height = from_height

        self.is_running = False
        self.has_lock = False

    async def next_height(self) -> int:
        """First height not yet processed."""
        if self._from_height is not None:
            return self._from_height

        progress = await self.progress_repo.get_progress(self.INDEXER_TYPE)
        if progress:
            return progress.last_processed_height + 1
        return self.settings.start_height

    async def process_one(self, height: int) -> BlockStats:
        """Process ``height`` and record it as done."""
        stats = await self.processor.process_height(height)

        await self.progress_repo.update_progress(
            self.INDEXER_TYPE,
            height,
            status="running",
            error_message=""
        )
        self._from_height = None
        await self.cache_repo.set(self.HEARTBEAT_KEY, str(height))
        return stats

    async def sync_once(self) -> int:
        """Process every height up to the current tip; returns how many were done."""
        latest = await self.blockchain.get_latest_height()
        height = await self.next_height()

        processed = 0
        while self.is_running and height <= latest:
            await self.process_one(height)
            processed += 1
            height += 1

            if processed % 100 == 0:
                if not await self.cache_repo.extend_lock(self.LOCK_KEY, self.settings.lock_timeout_seconds):
                    logger.warning("Lost the ingest lock, pausing", last_height=height - 1)
                    self.has_lock = False
                    break

        if processed:
            logger.info("Caught up", last_height=height - 1, processed=processed, tip=latest)
        return processed

    async def run(self) -> None:
        """Run until :meth:`stop` is called."""
        self.is_running = True
        logger.info("Indexer loop started",
                    start_height=await self.next_height(),
                    interval=self.settings.worker_interval_seconds)

        try:
            while self.is_running:
                if not await self._ensure_lock():
                    await asyncio.sleep(self.settings.worker_interval_seconds)
                    continue

                try:
                    processed = await self.sync_once()
                except Exception as e:
                    await self._record_failure(e)
                    await asyncio.sleep(self.settings.worker_retry_delay)
                    continue

                if not processed:
                    await asyncio.sleep(self.settings.worker_interval_seconds)
        finally:
            if self.has_lock:
                await self.cache_repo.release_lock(self.LOCK_KEY)
                self.has_lock = False

    async def stop(self) -> None:
        self.is_running = False
        logger.info("Indexer loop stopping")

    async def _ensure_lock(self) -> bool:
        acquired = await self.cache_repo.acquire_lock(self.LOCK_KEY, self.settings.lock_timeout_seconds)
        if not acquired and not self.has_lock:
            logger.info("Another worker holds the ingest lock, waiting")
        self.has_lock = acquired
        return acquired

    async def _record_failure(self, error: Exception) -> None:
        logger.error("Height processing failed, will retry",
                     retry_delay=self.settings.worker_retry_delay,
                     error=str(error),
                     error_type=type(error).__name__)
        try:
            height = await self.next_height()
            await self.progress_repo.update_progress(
                self.INDEXER_TYPE,
                height - 1,
                status="error",
                error_message=str(error)
            )
        except Exception as e:
            logger.error("Failed to record indexer error", error=str(e))

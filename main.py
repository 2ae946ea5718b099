#!/usr/bin/env python3
"""
ZIG DEX Indexer Worker - Main Entry Point

Indexes pools, trades, reserves and 1-minute OHLCV bars of a CosmWasm AMM
DEX from CometBFT block results, and serves candles and swap quotes from
the indexed data.
"""

import asyncio
import json
import signal
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional
import structlog
import click

# Add current directory to path for imports
sys.path.insert(0, str(Path(__file__).parent))

from config.settings import Settings, get_settings
from repositories.mongodb import MongoMarketRepository, MongoProgressRepository
from repositories.redis_cache import RedisCacheRepository
from services.block_processor import BlockProcessor
from services.blockchain_service import BlockchainService
from services.event_extractor import EventExtractor
from services.indexer import IndexerService
from services.ohlcv_aggregator import CandleScope, OHLCVAggregator, TIMEFRAMES
from services.pool_directory import PoolDirectory
from services.router import QuoteError, RoutingEngine
from services.task_scheduler import LowPriorityQueue
from services.token_metadata import TokenMetadataService
from utils.decimal_utils import format_price
from utils.logging import configure_logging

logger = structlog.get_logger()


class IndexerWorker:
    """Wires repositories, RPC client and pipeline together and owns their lifecycle."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        from_height: Optional[int] = None,
        reset_progress: bool = False,
    ):
        self.settings = settings or get_settings()
        self.reset_progress = reset_progress
        self.is_running = False

        s = self.settings
        self.market_repo = MongoMarketRepository(s.mongodb_url, s.mongodb_database)
        self.progress_repo = MongoProgressRepository(s.mongodb_url, s.mongodb_database)
        self.cache_repo = RedisCacheRepository(s.redis_url, s.redis_db, s.redis_key_prefix)
        self.blockchain = BlockchainService(s)

        self.directory = PoolDirectory(self.market_repo, s.prefetch_limit)
        self.extractor = EventExtractor(s.factory_address, s.router_address, s.native_denom)
        self.metadata = TokenMetadataService(
            self.market_repo,
            self.blockchain,
            self.directory,
            native_denom=s.native_denom,
            native_exponent=s.native_exponent,
        )
        self.processor = BlockProcessor(
            self.blockchain,
            self.market_repo,
            self.directory,
            self.extractor,
            metadata=self.metadata,
            metadata_queue=LowPriorityQueue(
                s.metadata_limit,
                name="token_metadata",
                cache=self.cache_repo,
                shared_set="token_meta_seen",
            ),
            concurrency=s.block_proc_concurrency,
            max_pending=s.max_pending_tasks,
            native_denom=s.native_denom,
            native_exponent=s.native_exponent,
        )
        self.indexer = IndexerService(
            s,
            self.blockchain,
            self.processor,
            self.progress_repo,
            self.cache_repo,
            from_height=from_height,
        )

        if not s.factory_address:
            logger.warning("No factory address configured, create_pair events will be ignored")

    async def connect(self) -> None:
        """Connect every backing service."""
        logger.info("Connecting to all services...")
        await self.market_repo.connect()
        await self.progress_repo.connect()
        await self.cache_repo.connect()
        await self.blockchain.connect()
        logger.info("All services connected successfully")

    async def disconnect(self) -> None:
        for name, closer in (
            ("blockchain", self.blockchain.disconnect),
            ("cache_repository", self.cache_repo.disconnect),
            ("progress_repository", self.progress_repo.disconnect),
            ("market_repository", self.market_repo.disconnect),
        ):
            try:
                await closer()
            except Exception as e:
                logger.warning("Error disconnecting service", service=name, error=str(e))

    async def start(self, with_health_server: bool = True) -> None:
        """Start the indexer loop, optionally with the health HTTP server."""
        try:
            logger.info("Starting ZIG DEX Indexer Worker",
                        settings=self.settings.model_dump(exclude={"mongodb_url", "redis_url"}))
            await self.connect()

            if self.reset_progress:
                await self.progress_repo.delete_progress(IndexerService.INDEXER_TYPE)
                logger.info("Progress reset completed")

            self.is_running = True
            self._setup_signal_handlers()

            tasks = [asyncio.create_task(self.indexer.run(), name="indexer")]
            if with_health_server:
                from health_server import HealthServer
                health = HealthServer(self, port=self.settings.health_port)
                tasks.append(asyncio.create_task(health.start(), name="health-server"))

            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for task in done:
                task.result()
        except asyncio.CancelledError:
            logger.info("Indexer worker cancelled")
        except Exception as e:
            logger.error("Indexer worker failed", error=str(e))
            raise
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop the indexer worker gracefully."""
        if not self.is_running:
            await self.disconnect()
            return

        self.is_running = False
        await self.indexer.stop()
        await self.disconnect()
        logger.info("ZIG DEX Indexer Worker stopped")

    def _setup_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()

        def _shutdown(signame: str) -> None:
            logger.info("Received shutdown signal, initiating graceful shutdown", signal=signame)
            asyncio.ensure_future(self.indexer.stop())

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, _shutdown, sig.name)
            except NotImplementedError:
                # Windows event loops have no signal handler support
                pass

    async def health_check(self) -> Dict[str, Any]:
        """Health of every backing service plus ingest progress."""
        health: Dict[str, Any] = {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "components": {}
        }

        for name, repo in (("mongodb", self.market_repo), ("redis", self.cache_repo)):
            ok = await repo.health_check()
            health["components"][name] = {"status": "healthy" if ok else "unhealthy"}
            if not ok:
                health["status"] = "unhealthy"

        try:
            latest = await self.blockchain.get_latest_height()
            health["components"]["rpc"] = {"status": "healthy", "latest_height": latest}
        except Exception as e:
            health["components"]["rpc"] = {"status": "unhealthy", "error": str(e)}
            health["status"] = "unhealthy"
            latest = None

        try:
            progress = await self.progress_repo.get_progress(IndexerService.INDEXER_TYPE)
        except Exception as e:
            progress = None
            health["components"]["progress"] = {"status": "unhealthy", "error": str(e)}
        if progress:
            health["components"]["progress"] = {
                "status": progress.status,
                "last_processed_height": progress.last_processed_height,
                "lag": latest - progress.last_processed_height if latest is not None else None,
                "error_message": progress.error_message or None,
            }

        try:
            heartbeat = await self.cache_repo.get(IndexerService.HEARTBEAT_KEY)
            health["components"].setdefault("progress", {})["heartbeat_height"] = (
                int(heartbeat) if heartbeat else None
            )
        except Exception as e:
            logger.warning("Failed to read heartbeat", error=str(e))

        return health


def _resolve_logging(settings: Settings, log_level: Optional[str], log_format: Optional[str], debug: bool) -> None:
    effective_level = "DEBUG" if debug else (log_level or settings.log_level)
    effective_format = log_format or settings.log_format
    configure_logging(effective_level, effective_format)


async def _with_market_repo(settings: Settings, action):
    repo = MongoMarketRepository(settings.mongodb_url, settings.mongodb_database)
    await repo.connect()
    try:
        return await action(repo)
    finally:
        await repo.disconnect()


def _parse_time(value: Optional[str], default: datetime) -> datetime:
    if not value:
        return default
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


# CLI Commands
@click.group()
def cli():
    """ZIG DEX Indexer Worker CLI"""
    pass


@cli.command()
@click.option('--from-height', type=int, help='Start at this height instead of the recorded progress')
@click.option('--log-format', type=click.Choice(['json', 'console']), help='Log output format (overrides ZIGDEX_LOG_FORMAT)')
@click.option('--log-level', type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR']), help='Log level (overrides ZIGDEX_LOG_LEVEL)')
@click.option('--debug', is_flag=True, help='Enable debug logging (same as --log-level DEBUG)')
@click.option('--reset-progress', is_flag=True, help='Reset indexing progress and start fresh')
@click.option('--no-health-server', is_flag=True, help='Do not serve the health endpoints')
def start(from_height: int = None, log_format: str = None, log_level: str = None, debug: bool = False,
          reset_progress: bool = False, no_health_server: bool = False):
    """Start the indexer worker."""
    settings = get_settings()
    _resolve_logging(settings, log_level, log_format, debug)

    worker = IndexerWorker(settings, from_height=from_height, reset_progress=reset_progress)
    try:
        asyncio.run(worker.start(with_health_server=not no_health_server))
    except KeyboardInterrupt:
        logger.info("Indexer worker interrupted by user")
    except Exception as e:
        logger.error("Indexer worker failed", error=str(e))
        sys.exit(1)


@cli.command('process-height')
@click.argument('height', type=int)
@click.option('--log-level', type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR']), help='Log level')
def process_height(height: int, log_level: str = None):
    """Process a single height and print its stats."""
    settings = get_settings()
    _resolve_logging(settings, log_level, "console", False)

    async def run():
        worker = IndexerWorker(settings)
        await worker.connect()
        try:
            return await worker.processor.process_height(height)
        finally:
            await worker.disconnect()

    try:
        stats = asyncio.run(run())
        click.echo(json.dumps(stats.to_dict(), indent=2))
    except Exception as e:
        click.echo(f"Processing height {height} failed: {e}")
        sys.exit(1)


@cli.command()
@click.option('--pool-id', type=int, help='Single pool scope')
@click.option('--token', 'denom', help='Token scope: all native-quoted pools of this denom')
@click.option('--tf', default='1m', type=click.Choice(list(TIMEFRAMES.keys())), help='Timeframe')
@click.option('--start', 'start_at', help='ISO start time (default: 24h ago)')
@click.option('--end', 'end_at', help='ISO end time (default: now)')
@click.option('--fill', default='prev', type=click.Choice(['prev', 'zero', 'none']))
@click.option('--mode', default='price', type=click.Choice(['price', 'mcap']))
@click.option('--unit', default='native', type=click.Choice(['native', 'usd']))
@click.option('--supply', type=float, help='Circulating supply for mcap mode (default: stored token supply)')
def candles(pool_id: int, denom: str, tf: str, start_at: str, end_at: str, fill: str, mode: str,
            unit: str, supply: float):
    """Print candles as JSON lines."""
    if (pool_id is None) == (denom is None):
        raise click.UsageError("pass exactly one of --pool-id or --token")

    settings = get_settings()
    configure_logging("WARNING", "console")
    now = datetime.now(timezone.utc)
    end = _parse_time(end_at, now)
    begin = _parse_time(start_at, end - timedelta(days=1))
    scope = CandleScope.pool(pool_id) if pool_id is not None else CandleScope.token(denom)

    async def run(repo):
        return await OHLCVAggregator(repo).get_candles(
            scope, tf, begin, end,
            mode=mode, unit=unit, fill=fill,
            circulating_supply=supply,
            native_usd=settings.native_usd_rate,
        )

    for candle in asyncio.run(_with_market_repo(settings, run)):
        click.echo(candle.model_dump_json())


@cli.command()
@click.argument('from_ref')
@click.argument('to_ref')
@click.option('--amount', type=float, help='Input amount in display units')
def quote(from_ref: str, to_ref: str, amount: float = None):
    """Quote the best route between two assets."""
    settings = get_settings()
    configure_logging("WARNING", "console")

    async def run(repo):
        engine = RoutingEngine(
            repo,
            native_denom=settings.native_denom,
            native_exponent=settings.native_exponent,
            default_notional_usd=settings.route_default_notional_usd,
            price_tolerance=settings.route_price_tolerance,
            native_usd_rate=settings.native_usd_rate,
        )
        return await engine.quote(from_ref, to_ref, amount_in=amount)

    try:
        result = asyncio.run(_with_market_repo(settings, run))
    except QuoteError as e:
        click.echo(f"Quote failed: {e}")
        sys.exit(2)

    if result.pairs:
        click.echo(f"Route: {' -> '.join(result.route)}  "
                   f"in: {format_price(result.amount_in)}  "
                   f"out: {format_price(result.amount_out)}  "
                   f"price: {format_price(result.price_native)}")
    else:
        click.echo(f"Route: {' -> '.join(result.route)}  no liquidity")
    click.echo(result.model_dump_json(indent=2))


@cli.command()
def health():
    """Check health of indexer services."""
    settings = get_settings()
    configure_logging("WARNING", "console")

    async def check_health():
        worker = IndexerWorker(settings)
        try:
            await worker.market_repo.connect()
            await worker.progress_repo.connect()
            await worker.cache_repo.connect()
            await worker.blockchain.connect()
        except Exception as e:
            logger.warning("Service unavailable during health check", error=str(e))
        try:
            return await worker.health_check()
        finally:
            await worker.disconnect()

    try:
        health_status = asyncio.run(check_health())
    except Exception as e:
        click.echo(f"Health check failed: {e}")
        sys.exit(1)

    click.echo(f"Status: {health_status['status']}")
    click.echo(f"Timestamp: {health_status['timestamp']}")
    for component, comp_health in health_status.get('components', {}).items():
        click.echo(f"  {component}: {comp_health.get('status', 'unknown')}")
        if comp_health.get('error'):
            click.echo(f"    Error: {comp_health['error']}")

    if health_status['status'] != 'healthy':
        sys.exit(1)


@cli.command()
def config():
    """Show current configuration."""
    settings = get_settings()

    click.echo("=== ZIG DEX Indexer Configuration ===\n")
    click.echo("Settings:")
    for key, value in settings.model_dump().items():
        if 'url' in key.lower() and key not in ('rpc_url', 'lcd_url'):
            # Mask credentials in connection strings
            value = "***masked***"
        click.echo(f"  {key}: {value}")
    click.echo("\nDerived limits:")
    click.echo(f"  prefetch_limit: {settings.prefetch_limit}")
    click.echo(f"  metadata_limit: {settings.metadata_limit}")


if __name__ == "__main__":
    cli()

"""Tests for candle bucketing and gap filling."""

from datetime import datetime, timedelta, timezone

import pytest

from models.market import OHLCVBar
from services.ohlcv_aggregator import CandleScope, OHLCVAggregator, ensure_timeframe, merge_minute_bars

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def minute(n):
    return T0 + timedelta(minutes=n)


@pytest.fixture
def seeded(repo):
    pool = repo.add_pool("zig1pair", "coin.x")
    repo.add_bar(pool.pool_id, minute(0), 1.0, 2.0, 0.5, 1.5, volume=10, trades=2)
    repo.add_bar(pool.pool_id, minute(2), 1.5, 2.5, 1.4, 2.0, volume=4, trades=1)
    return pool


@pytest.mark.asyncio
async def test_prev_fill_is_continuous(repo, seeded):
    candles = await OHLCVAggregator(repo).get_candles(
        CandleScope.pool(seeded.pool_id), "1m", start=minute(0), end=minute(5), fill="prev"
    )

    assert [c.ts for c in candles] == [minute(i) for i in range(5)]
    assert candles[1].open == candles[1].close == 1.5
    assert candles[1].volume == 0 and candles[1].trades == 0
    assert [c.close for c in candles[3:]] == [2.0, 2.0]


@pytest.mark.asyncio
async def test_none_fill_omits_empty_buckets(repo, seeded):
    candles = await OHLCVAggregator(repo).get_candles(
        CandleScope.pool(seeded.pool_id), "1m", start=minute(0), end=minute(5), fill="none"
    )
    assert [c.ts for c in candles] == [minute(0), minute(2)]


@pytest.mark.asyncio
async def test_zero_fill(repo, seeded):
    candles = await OHLCVAggregator(repo).get_candles(
        CandleScope.pool(seeded.pool_id), "1m", start=minute(0), end=minute(4), fill="zero"
    )
    assert len(candles) == 4
    assert (candles[1].open, candles[1].close, candles[1].volume) == (0.0, 0.0, 0.0)


@pytest.mark.asyncio
async def test_coarser_timeframe_aggregates_minutes(repo, seeded):
    candles = await OHLCVAggregator(repo).get_candles(
        CandleScope.pool(seeded.pool_id), "5m", start=minute(0), end=minute(10)
    )

    assert [c.ts for c in candles] == [minute(0), minute(5)]
    first = candles[0]
    assert (first.open, first.high, first.low, first.close) == (1.0, 2.5, 0.5, 2.0)
    assert first.volume == 14
    assert first.trades == 3
    assert candles[1].close == 2.0


@pytest.mark.asyncio
async def test_unaligned_window_excludes_earlier_minutes(repo):
    pool = repo.add_pool("zig1pair", "coin.x")
    repo.add_bar(pool.pool_id, minute(1), 9.0, 9.0, 9.0, 9.0)
    repo.add_bar(pool.pool_id, minute(4), 2.0, 3.0, 1.0, 2.5)

    candles = await OHLCVAggregator(repo).get_candles(
        CandleScope.pool(pool.pool_id), "5m", start=minute(3), end=minute(13)
    )

    assert [c.ts for c in candles] == [minute(3), minute(8)]
    first = candles[0]
    assert (first.open, first.high, first.low, first.close) == (2.0, 3.0, 1.0, 2.5)
    assert candles[1].close == 2.5


@pytest.mark.asyncio
async def test_prev_fill_seeded_from_earlier_bar(repo):
    pool = repo.add_pool("zig1pair", "coin.x")
    repo.add_bar(pool.pool_id, minute(-10), 0.8, 0.9, 0.7, 0.9)

    candles = await OHLCVAggregator(repo).get_candles(
        CandleScope.pool(pool.pool_id), "1m", start=minute(0), end=minute(2)
    )
    assert [c.close for c in candles] == [0.9, 0.9]


@pytest.mark.asyncio
async def test_unknown_scope_returns_empty(repo, seeded):
    aggregator = OHLCVAggregator(repo)
    assert await aggregator.get_candles(CandleScope.pool(999), "1m", start=minute(0), end=minute(5)) == []
    assert await aggregator.get_candles(CandleScope.token("coin.none"), "1m", start=minute(0), end=minute(5)) == []


@pytest.mark.asyncio
async def test_token_scope_merges_pools(repo):
    a = repo.add_pool("zig1a", "coin.x")
    b = repo.add_pool("zig1b", "coin.x", pair_type="concentrated")
    repo.add_bar(a.pool_id, minute(0), 1.0, 1.2, 0.9, 1.1, volume=1, trades=1)
    repo.add_bar(b.pool_id, minute(0), 2.0, 2.5, 1.9, 2.2, volume=5, trades=3)

    candles = await OHLCVAggregator(repo).get_candles(
        CandleScope.token("coin.x"), "1m", start=minute(0), end=minute(1)
    )

    assert len(candles) == 1
    c = candles[0]
    assert (c.open, c.high, c.low, c.close) == (2.0, 2.5, 0.9, 2.2)
    assert c.volume == 6
    assert c.trades == 4


@pytest.mark.asyncio
async def test_mcap_and_usd_scaling(repo, seeded):
    candles = await OHLCVAggregator(repo).get_candles(
        CandleScope.pool(seeded.pool_id), "1m", start=minute(0), end=minute(1),
        mode="mcap", unit="usd", circulating_supply=1000, native_usd=0.5,
    )
    assert candles[0].close == pytest.approx(1.5 * 1000 * 0.5)
    assert candles[0].volume == pytest.approx(10 * 0.5)


@pytest.mark.asyncio
async def test_window_is_required(repo):
    with pytest.raises(ValueError):
        await OHLCVAggregator(repo).get_candles(CandleScope.pool(1), "1m", start=None, end=minute(1))


@pytest.mark.asyncio
async def test_empty_window(repo, seeded):
    assert await OHLCVAggregator(repo).get_candles(
        CandleScope.pool(seeded.pool_id), "1m", start=minute(5), end=minute(5)
    ) == []


def test_ensure_timeframe():
    assert ensure_timeframe("1H") == "1h"
    assert ensure_timeframe("3mth") == "3mth"
    assert ensure_timeframe("bogus") == "1m"
    assert ensure_timeframe(None) == "1m"


def test_merge_keeps_single_pool_bars():
    bar = OHLCVBar(pool_id=1, bucket_start=T0, open=1, high=1, low=1, close=1)
    assert merge_minute_bars([bar]) == [bar]


@pytest.mark.asyncio
async def test_known_pool_without_trades_gets_zero_bars(repo):
    pool = repo.add_pool("zig1quiet", "coin.q")
    aggregator = OHLCVAggregator(repo)

    zero = await aggregator.get_candles(
        CandleScope.pool(pool.pool_id), "1m", start=minute(0), end=minute(5), fill="zero"
    )
    assert [c.ts for c in zero] == [minute(i) for i in range(5)]
    assert all(c.close == 0.0 and c.trades == 0 for c in zero)

    assert await aggregator.get_candles(
        CandleScope.pool(pool.pool_id), "1m", start=minute(0), end=minute(5), fill="none"
    ) == []


@pytest.mark.asyncio
async def test_mcap_uses_stored_token_supply(repo, seeded):
    await repo.update_token_metadata("coin.x", {"total_supply_base": "1000000000000", "exponent": 6})
    aggregator = OHLCVAggregator(repo)

    by_pool = await aggregator.get_candles(
        CandleScope.pool(seeded.pool_id), "1m", start=minute(0), end=minute(1), mode="mcap"
    )
    by_token = await aggregator.get_candles(
        CandleScope.token("coin.x"), "1m", start=minute(0), end=minute(1), mode="mcap"
    )

    assert by_pool[0].close == pytest.approx(1.5 * 1_000_000)
    assert by_token[0].close == pytest.approx(1.5 * 1_000_000)
    assert await aggregator.circulating_supply("coin.x") == pytest.approx(1_000_000)


@pytest.mark.asyncio
async def test_mcap_without_known_supply_is_empty(repo, seeded):
    candles = await OHLCVAggregator(repo).get_candles(
        CandleScope.pool(seeded.pool_id), "1m", start=minute(0), end=minute(3), mode="mcap"
    )
    assert candles == []

"""Tests for the pool cache."""

import pytest

from services.pool_directory import PoolDirectory


@pytest.mark.asyncio
async def test_lookup_caches_hits_only(repo):
    repo.add_pool("zig1pair", "coin.x")
    directory = PoolDirectory(repo)

    assert await directory.lookup("zig1missing") is None
    assert await directory.lookup("zig1missing") is None
    pool = await directory.lookup("zig1pair")
    assert pool.base_exponent == 6
    await directory.lookup("zig1pair")

    assert repo.pool_reads == 3
    assert len(directory) == 1


@pytest.mark.asyncio
async def test_prefetch_tolerates_failures(repo):
    repo.add_pool("zig1a", "coin.a")
    repo.add_pool("zig1b", "coin.b")
    repo.fail_pool_reads.add("zig1b")
    directory = PoolDirectory(repo, prefetch_limit=2)

    loaded = await directory.prefetch(["zig1a", "zig1b", "zig1unknown", ""])

    assert loaded == 1
    assert len(directory) == 1
    assert await directory.prefetch(["zig1a"]) == 0


@pytest.mark.asyncio
async def test_forget_denom(repo):
    directory = PoolDirectory(repo)
    directory.remember(repo.add_pool("zig1a", "coin.a"))
    directory.remember(repo.add_pool("zig1b", "coin.b"))

    assert directory.forget_denom("coin.a") == 1
    assert len(directory) == 1

    reads = repo.pool_reads
    assert (await directory.lookup("zig1b")).base_denom == "coin.b"
    assert repo.pool_reads == reads
    assert (await directory.lookup("zig1a")).base_denom == "coin.a"
    assert repo.pool_reads == reads + 1
    assert directory.forget_denom("uzig") == 2

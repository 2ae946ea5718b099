"""Repositories for the ZIG DEX indexer."""

from .mongodb import MongoMarketRepository, MongoProgressRepository
from .redis_cache import RedisCacheRepository

__all__ = [
    "MongoMarketRepository",
    "MongoProgressRepository",
    "RedisCacheRepository"
]

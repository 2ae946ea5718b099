from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # Database settings
    mongodb_url: str = "mongodb://localhost:27017"
    mongodb_database: str = "zigdex_indexer"

    # Redis settings
    redis_url: str = "redis://localhost:6379"
    redis_db: int = 0
    redis_key_prefix: str = "zigdex:indexer"

    # Chain endpoints
    rpc_url: str = "http://localhost:26657"
    lcd_url: str = "http://localhost:1317"
    rpc_timeout: int = 30
    rpc_max_retries: int = 3
    rpc_retry_delay: int = 2

    # DEX contracts
    factory_address: str = ""
    router_address: Optional[str] = None
    native_denom: str = "uzig"
    native_exponent: int = 6

    # Block processing
    block_proc_concurrency: int = 12  # 8-16 is healthy
    pool_prefetch_concurrency: int = 24
    metadata_concurrency: int = 4
    max_pending_tasks: int = 5000  # soft back-pressure per block

    # Worker settings
    start_height: int = 1
    worker_interval_seconds: int = 2
    worker_retry_delay: int = 5
    lock_timeout_seconds: int = 300

    # Routing
    route_default_notional_usd: float = 100.0
    route_price_tolerance: float = 0.001
    native_usd_rate: float = 1.0

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    # Health server
    health_port: int = 8080

    class Config:
        env_file = ".env"
        env_prefix = "ZIGDEX_"

    @property
    def prefetch_limit(self) -> int:
        """Pool prefetch ceiling, never above the primary ceiling."""
        return max(1, min(self.block_proc_concurrency, self.pool_prefetch_concurrency))

    @property
    def metadata_limit(self) -> int:
        """Low-priority metadata ceiling."""
        return max(1, min(self.metadata_concurrency, self.block_proc_concurrency))


def get_settings() -> Settings:
    """Get application settings."""
    return Settings()

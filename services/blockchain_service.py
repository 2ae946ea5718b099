"""CometBFT RPC and Cosmos LCD client."""

from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
import asyncio
import re
import aiohttp
import structlog
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from config.settings import Settings
from models.events import Block, BlockResults, TxEvent
from services.parsers.attributes import tx_hash_from_base64

logger = structlog.get_logger()

_FRACTION_RE = re.compile(r"\.([0-9]+)")


class RPCError(Exception):
    """Upstream node request failed."""


class RPCNotFound(RPCError):
    """Upstream answered 404; never retried."""


def _retryable(exc: BaseException) -> bool:
    return isinstance(exc, RPCError) and not isinstance(exc, RPCNotFound)


def parse_block_time(value: str) -> datetime:
    """Parse an RFC3339 header time with up to nanosecond precision as UTC."""
    text = value.strip().replace("Z", "+00:00")
    # datetime only keeps microseconds
    text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _result(payload: Any) -> Optional[Dict[str, Any]]:
    """Accept both the JSON-RPC envelope and a bare result object."""
    if not isinstance(payload, dict):
        return None
    result = payload.get("result", payload)
    return result if isinstance(result, dict) else None


def unwrap_block(payload: Any) -> Optional[Block]:
    """Block from a ``/block`` response, or None when the header is missing."""
    result = _result(payload)
    block = result.get("block") if result else None
    header = block.get("header") if isinstance(block, dict) else None
    if not header:
        return None

    txs = (block.get("data") or {}).get("txs") or []
    return Block(
        height=int(header["height"]),
        timestamp=parse_block_time(header["time"]),
        txs=txs,
        tx_hashes=[tx_hash_from_base64(tx) for tx in txs],
    )


def unwrap_block_results(payload: Any, height: Optional[int] = None) -> BlockResults:
    """Per-transaction event lists from a ``/block_results`` response."""
    result = _result(payload) or {}

    txs_events: List[List[TxEvent]] = []
    for tx_result in result.get("txs_results") or []:
        events = []
        for event in (tx_result or {}).get("events") or []:
            attributes = [
                (str(attr.get("key") or ""), str(attr.get("value") or ""))
                for attr in event.get("attributes") or []
            ]
            events.append(TxEvent(type=event.get("type") or "", attributes=attributes))
        txs_events.append(events)

    raw_height = result.get("height")
    return BlockResults(
        height=int(raw_height) if raw_height is not None else (height or 0),
        txs_events=txs_events,
    )


class BlockchainService:
    """Async client for the node's RPC and LCD endpoints."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.rpc_url = settings.rpc_url.rstrip("/")
        self.lcd_url = settings.lcd_url.rstrip("/")
        self.session: Optional[aiohttp.ClientSession] = None

    async def connect(self) -> None:
        """Open the HTTP session and probe the RPC node."""
        self.session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.settings.rpc_timeout)
        )
        try:
            latest = await self.get_latest_height()
            logger.info("Connected to chain RPC", rpc_url=self.rpc_url, latest_height=latest)
        except Exception as e:
            logger.error("Failed to connect to chain RPC", rpc_url=self.rpc_url, error=str(e))
            await self.disconnect()
            raise

    async def disconnect(self) -> None:
        if self.session:
            await self.session.close()
            self.session = None
            logger.info("Disconnected from chain RPC")

    async def _request(self, url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not self.session:
            raise RPCError("Session not initialized")

        try:
            async with self.session.get(url, params=params) as response:
                if response.status == 404:
                    raise RPCNotFound(f"HTTP 404: {url}")
                if response.status != 200:
                    raise RPCError(f"HTTP {response.status}: {await response.text()}")

                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise RPCError(f"{type(e).__name__}: {e}") from e

        if isinstance(data, dict) and data.get("error"):
            raise RPCError(f"RPC error: {data['error']}")
        return data

    async def _get(self, url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """GET with exponential backoff on transient failures."""
        delay = self.settings.rpc_retry_delay
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max(1, self.settings.rpc_max_retries)),
            wait=wait_exponential(multiplier=delay, min=delay, max=30),
            retry=retry_if_exception(_retryable),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning("Retrying request",
                                   url=url,
                                   attempt=attempt.retry_state.attempt_number)
                return await self._request(url, params)

    async def get_block(self, height: int) -> Dict[str, Any]:
        return await self._get(f"{self.rpc_url}/block", {"height": str(height)})

    async def get_block_results(self, height: int) -> Dict[str, Any]:
        return await self._get(f"{self.rpc_url}/block_results", {"height": str(height)})

    async def get_latest_height(self) -> int:
        """Latest committed height from ``/status``."""
        data = await self._get(f"{self.rpc_url}/status")
        result = _result(data) or {}
        try:
            return int(result["sync_info"]["latest_block_height"])
        except (KeyError, TypeError, ValueError) as e:
            raise RPCError(f"Malformed status response: {e}") from e

    async def lcd_get(self, path: str) -> Optional[Dict[str, Any]]:
        """GET an LCD path; None when the resource does not exist."""
        try:
            return await self._get(f"{self.lcd_url}/{path.lstrip('/')}")
        except RPCNotFound:
            return None

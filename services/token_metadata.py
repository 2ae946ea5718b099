"""Token display metadata enrichment from the chain's LCD."""

from typing import Any, Dict, Optional, Tuple
from urllib.parse import quote
import re
import structlog

from repositories.base import MarketRepository
from services.blockchain_service import BlockchainService
from services.pool_directory import PoolDirectory

logger = structlog.get_logger()

_MICRO_DENOM_RE = re.compile(r"^u([a-z0-9]+)$", re.IGNORECASE)


def exponent_from_display(metadata: Optional[Dict[str, Any]]) -> Optional[int]:
    """Exponent of the denom unit named by ``display`` (or carrying it as alias)."""
    if not metadata or not metadata.get("display"):
        return None
    units = metadata.get("denom_units")
    if not isinstance(units, list):
        return None

    display = metadata["display"]
    for unit in units:
        if isinstance(unit, dict) and unit.get("denom") == display and unit.get("exponent") is not None:
            return int(unit["exponent"])
    for unit in units:
        if isinstance(unit, dict) and display in (unit.get("aliases") or []) and unit.get("exponent") is not None:
            return int(unit["exponent"])
    return None


def derive_from_base_denom(base: str) -> Tuple[str, str, int]:
    """Heuristic (symbol, display, exponent) when the chain has no metadata.

    ``uatom`` becomes ATOM/atom. The exponent is always 0: nothing is
    assumed about scaling without metadata.
    """
    match = _MICRO_DENOM_RE.match(base)
    core = match.group(1) if match else base
    return core.upper(), core.lower(), 0


class TokenMetadataService:
    """Fills name, symbol, display, exponent and supply for newly seen denoms."""

    def __init__(
        self,
        repository: MarketRepository,
        blockchain: BlockchainService,
        directory: Optional[PoolDirectory] = None,
        native_denom: str = "uzig",
        native_exponent: int = 6,
    ):
        self.repository = repository
        self.blockchain = blockchain
        self.directory = directory
        self.native_denom = native_denom
        self.native_exponent = native_exponent

    async def _ibc_base_denom(self, denom: str) -> Optional[str]:
        data = await self.blockchain.lcd_get(f"ibc/apps/transfer/v1/denom_traces/{denom[len('ibc/'):]}")
        trace = (data or {}).get("denom_trace") or (data or {}).get("denom") or {}
        return trace.get("base_denom") or trace.get("base")

    async def _denom_metadata(self, denom: str) -> Optional[Dict[str, Any]]:
        data = await self.blockchain.lcd_get(
            f"cosmos/bank/v1beta1/denoms_metadata_by_query_string?denom={quote(denom, safe='')}"
        )
        return (data or {}).get("metadata")

    async def _factory_denom(self, denom: str) -> Optional[Dict[str, Any]]:
        return await self.blockchain.lcd_get(f"zigchain/factory/denom/{quote(denom, safe='')}")

    async def enrich(self, denom: str) -> bool:
        """Update the token row of ``denom``; False when the LCD could not be read."""
        try:
            fields: Dict[str, Any] = {}
            lookup = denom
            base_from_trace = None

            if denom.startswith("ibc/"):
                fields["type"] = "ibc"
                base_from_trace = await self._ibc_base_denom(denom)
                if base_from_trace:
                    lookup = base_from_trace
            elif denom == self.native_denom:
                fields["type"] = "native"

            metadata = await self._denom_metadata(lookup)
            name = (metadata or {}).get("name") or None
            symbol = (metadata or {}).get("symbol") or None
            display = (metadata or {}).get("display") or None
            exponent = exponent_from_display(metadata)

            if exponent is None:
                h_symbol, h_display, exponent = derive_from_base_denom(base_from_trace or lookup)
                symbol = symbol or h_symbol
                display = display or h_display
                if denom == self.native_denom:
                    exponent = self.native_exponent

            if not display and base_from_trace:
                display = base_from_trace

            fields.update({"name": name, "symbol": symbol, "display": display, "exponent": exponent})
            if metadata and metadata.get("uri"):
                fields["image_uri"] = metadata["uri"]

            factory = None if denom.startswith("ibc/") else await self._factory_denom(lookup)
            if factory and (factory.get("total_supply") or factory.get("total_minted")):
                fields["type"] = "factory"
                fields["total_supply_base"] = str(factory.get("total_supply") or factory.get("total_minted"))
                max_supply = factory.get("max_supply") or factory.get("minting_cap")
                fields["max_supply_base"] = str(max_supply) if max_supply else None

            await self.repository.update_token_metadata(denom, fields)
            if self.directory is not None:
                self.directory.forget_denom(denom)

            logger.info("Enriched token metadata",
                        denom=denom,
                        symbol=symbol,
                        exponent=exponent,
                        from_metadata=metadata is not None)
            return True
        except Exception as e:
            logger.warning("Token metadata enrichment failed", denom=denom, error=str(e))
            return False

"""Best-execution quotes through native-quoted constant-product pools."""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
import structlog

from models.market import PoolInfo
from repositories.base import MarketRepository
from utils.amm_math import fee_for_pair_type, mid_price, price_impact, simulate_swap
from utils.decimal_utils import to_display

logger = structlog.get_logger()


class QuoteError(Exception):
    """Route request that cannot be served (unknown asset, unsupported pair)."""


class LegSide(str, Enum):
    BUY = "buy"    # native -> token
    SELL = "sell"  # token -> native


class RouteLeg(BaseModel):
    """One hop of a quoted route."""

    side: LegSide
    pool_id: int
    pair_contract: str
    pair_type: str
    fee: float
    method: str = Field(..., description="simulation or mid_price")
    amount_in: float
    amount_out: float
    mid_price: Optional[float] = Field(None, description="Native per token at current reserves")
    execution_price: Optional[float] = Field(None, description="Native per token actually paid/received")
    price_impact: Optional[float] = None
    tvl_native: float = 0.0


class QuoteResult(BaseModel):
    """Quote response. ``pairs`` is empty and prices are None when there is no liquidity."""

    route: List[str]
    pairs: List[RouteLeg] = Field(default_factory=list)
    price_native: Optional[float] = None
    price_usd: Optional[float] = None
    amount_in: Optional[float] = None
    amount_out: Optional[float] = None
    source: str
    cross: Optional[Dict[str, Optional[float]]] = None
    diagnostics: Dict[str, Any] = Field(default_factory=dict)


@dataclass
class PoolCandidate:
    pool: PoolInfo
    fee: Decimal
    base_reserve: Decimal
    quote_reserve: Decimal
    mid: Optional[Decimal]

    @property
    def has_reserves(self) -> bool:
        return self.base_reserve > 0 and self.quote_reserve > 0

    @property
    def tvl_native(self) -> Decimal:
        return self.quote_reserve * 2


@dataclass
class LegQuote:
    candidate: PoolCandidate
    side: LegSide
    method: str
    amount_in: Decimal
    amount_out: Decimal

    @property
    def execution_price(self) -> Optional[Decimal]:
        """Native per token for this leg."""
        if self.side == LegSide.BUY:
            return self.amount_in / self.amount_out if self.amount_out > 0 else None
        return self.amount_out / self.amount_in if self.amount_in > 0 else None

    @property
    def ranking_price(self) -> Optional[Decimal]:
        if self.method == "mid_price":
            return self.candidate.mid
        return self.execution_price

    def to_leg(self) -> RouteLeg:
        pool = self.candidate.pool
        impact = price_impact(self.execution_price, self.candidate.mid) if self.method == "simulation" else None
        return RouteLeg(
            side=self.side,
            pool_id=pool.pool_id,
            pair_contract=pool.pair_contract,
            pair_type=pool.pair_type,
            fee=float(self.candidate.fee),
            method=self.method,
            amount_in=float(self.amount_in),
            amount_out=float(self.amount_out),
            mid_price=_float(self.candidate.mid),
            execution_price=_float(self.ranking_price),
            price_impact=_float(impact),
            tvl_native=float(self.candidate.tvl_native),
        )


def _float(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


class RoutingEngine:
    """Quotes native/token and token/token swaps.

    Pools with reserves are ranked by simulated output for the requested
    amount. When no candidate has reserves, pools are ranked by their last
    traded price instead: lowest for buys, highest for sells, preferring
    higher TVL among prices within ``price_tolerance`` of the best.
    """

    def __init__(
        self,
        repository: MarketRepository,
        native_denom: str = "uzig",
        native_exponent: int = 6,
        default_notional_usd: float = 100.0,
        price_tolerance: float = 0.001,
        native_usd_rate: float = 1.0,
    ):
        self.repository = repository
        self.native_denom = native_denom
        self.native_exponent = native_exponent
        self.default_notional_usd = Decimal(str(default_notional_usd))
        self.price_tolerance = Decimal(str(price_tolerance))
        self.native_usd_rate = native_usd_rate

        aliases = {native_denom.lower()}
        if native_denom.lower().startswith("u") and len(native_denom) > 1:
            aliases.add(native_denom[1:].lower())
        self._native_aliases = aliases

    def is_native(self, ref: Optional[str]) -> bool:
        return bool(ref) and ref.strip().lower() in self._native_aliases

    async def _resolve(self, ref: str) -> Optional[str]:
        """None for the native asset, else the token denom."""
        if not ref or not ref.strip():
            raise QuoteError("missing asset reference")
        if self.is_native(ref):
            return None
        token = await self.repository.get_token(ref.strip())
        if not token:
            raise QuoteError(f"unknown token: {ref}")
        return token.denom

    async def candidates(self, denom: str, as_of: Optional[datetime] = None) -> List[PoolCandidate]:
        """Native-quoted pools of ``denom`` with reserves in display units."""
        as_of = as_of or datetime.now(timezone.utc)
        result = []
        for pool in await self.repository.list_native_pools_for_token(denom):
            if pool.pool_id is None:
                continue
            state = await self.repository.get_pool_state(pool.pool_id)
            base_raw, quote_raw = state.reserves_for(pool.base_denom) if state else (0, 0)
            base_reserve = to_display(base_raw, pool.base_exponent) or Decimal(0)
            quote_reserve = to_display(quote_raw, pool.quote_exponent) or Decimal(0)

            mid = mid_price(base_reserve, quote_reserve)
            if mid is None:
                last_close = await self.repository.get_last_close_before([pool.pool_id], as_of)
                mid = Decimal(str(last_close)) if last_close else None

            result.append(PoolCandidate(
                pool=pool,
                fee=fee_for_pair_type(pool.pair_type),
                base_reserve=base_reserve,
                quote_reserve=quote_reserve,
                mid=mid,
            ))
        return result

    def best_leg(self, candidates: List[PoolCandidate], side: LegSide, amount_in: Decimal) -> Optional[LegQuote]:
        """Pick the pool for one leg, or None when nothing is tradable.

        Pools with both reserves are ranked by simulated output. Only when
        none has both does the leg fall back to the last traded price. TVL
        comes from reserves, so in that fallback it is zero unless a pool
        recorded its quote side alone; the choice then rests on price within
        ``price_tolerance``.
        """
        if amount_in <= 0:
            return None

        simulatable = [c for c in candidates if c.has_reserves]
        if simulatable:
            quotes = []
            for c in simulatable:
                if side == LegSide.BUY:
                    out = simulate_swap(amount_in, c.quote_reserve, c.base_reserve, c.fee)
                else:
                    out = simulate_swap(amount_in, c.base_reserve, c.quote_reserve, c.fee)
                quotes.append(LegQuote(c, side, "simulation", amount_in, out))
            best = max(quotes, key=lambda q: (q.amount_out, q.candidate.tvl_native))
            return best if best.amount_out > 0 else None

        priced = [c for c in candidates if c.mid is not None and c.mid > 0]
        if not priced:
            return None

        if side == LegSide.BUY:
            best_price = min(c.mid for c in priced)
            within = [c for c in priced if c.mid <= best_price * (1 + self.price_tolerance)]
        else:
            best_price = max(c.mid for c in priced)
            within = [c for c in priced if c.mid >= best_price * (1 - self.price_tolerance)]
        # TVL first, then closeness to the best price
        chosen = max(within, key=lambda c: (c.tvl_native, -abs(c.mid - best_price)))

        net_in = amount_in * (Decimal(1) - chosen.fee)
        out = net_in / chosen.mid if side == LegSide.BUY else net_in * chosen.mid
        return LegQuote(chosen, side, "mid_price", amount_in, out)

    def _default_native_amount(self, native_usd: float) -> Decimal:
        rate = Decimal(str(native_usd)) if native_usd and native_usd > 0 else Decimal(1)
        return self.default_notional_usd / rate

    def _default_token_amount(self, candidates: List[PoolCandidate], native_usd: float) -> Decimal:
        """Default notional expressed in token units, using the deepest priced pool."""
        priced = [c for c in candidates if c.mid]
        if not priced:
            return Decimal(0)
        reference = max(priced, key=lambda c: c.tvl_native)
        return self._default_native_amount(native_usd) / reference.mid

    async def quote(
        self,
        from_ref: str,
        to_ref: str,
        amount_in: Optional[float] = None,
        native_usd: Optional[float] = None,
    ) -> QuoteResult:
        """Best route from ``from_ref`` to ``to_ref``.

        ``amount_in`` is in display units of the input asset; without it a
        default USD notional is used. Raises QuoteError for unknown assets or
        native-to-native requests.
        """
        from_denom = await self._resolve(from_ref)
        to_denom = await self._resolve(to_ref)
        rate = native_usd if native_usd is not None else self.native_usd_rate
        requested = Decimal(str(amount_in)) if amount_in is not None else None

        if from_denom is None and to_denom is None:
            raise QuoteError("unsupported route: native to native")

        if from_denom is None:
            return await self._direct(to_denom, LegSide.BUY, requested, rate)
        if to_denom is None:
            return await self._direct(from_denom, LegSide.SELL, requested, rate)
        return await self._via_native(from_denom, to_denom, requested, rate)

    async def _direct(self, denom: str, side: LegSide, requested: Optional[Decimal], rate: float) -> QuoteResult:
        route = [self.native_denom, denom] if side == LegSide.BUY else [denom, self.native_denom]
        candidates = await self.candidates(denom)

        if requested is not None:
            amount = requested
        elif side == LegSide.BUY:
            amount = self._default_native_amount(rate)
        else:
            amount = self._default_token_amount(candidates, rate)

        leg = self.best_leg(candidates, side, amount)
        if not leg:
            logger.debug("No liquidity for route", route=route, candidates=len(candidates))
            return QuoteResult(
                route=route,
                source="direct_native",
                diagnostics={"side": side.value, "candidates": len(candidates)},
            )

        price = leg.ranking_price
        return QuoteResult(
            route=route,
            pairs=[leg.to_leg()],
            price_native=_float(price),
            price_usd=float(price) * rate if price is not None else None,
            amount_in=float(leg.amount_in),
            amount_out=float(leg.amount_out),
            source="direct_native",
            diagnostics={
                "side": side.value,
                "method": leg.method,
                "pool_id": leg.candidate.pool.pool_id,
                "candidates": len(candidates),
                "rationale": self._rationale(side, leg.method),
            },
        )

    async def _via_native(
        self,
        from_denom: str,
        to_denom: str,
        requested: Optional[Decimal],
        rate: float,
    ) -> QuoteResult:
        route = [from_denom, self.native_denom, to_denom]
        sell_candidates = await self.candidates(from_denom)
        buy_candidates = await self.candidates(to_denom)

        amount = requested if requested is not None else self._default_token_amount(sell_candidates, rate)
        sell = self.best_leg(sell_candidates, LegSide.SELL, amount)
        buy = self.best_leg(buy_candidates, LegSide.BUY, sell.amount_out) if sell else None

        if not sell or not buy:
            return QuoteResult(
                route=route,
                source="via_native",
                diagnostics={"sell_leg": sell is not None, "buy_leg": buy is not None},
            )

        if sell.method == "mid_price" and buy.method == "mid_price":
            cross = sell.ranking_price / buy.ranking_price
            formula = "to_per_from = sell_price / buy_price"
        else:
            cross = buy.amount_out / sell.amount_in
            formula = "to_per_from = buy_leg_out / sell_leg_in"

        native_per_from = sell.ranking_price
        return QuoteResult(
            route=route,
            pairs=[sell.to_leg(), buy.to_leg()],
            price_native=float(cross),
            price_usd=None,
            amount_in=float(sell.amount_in),
            amount_out=float(buy.amount_out),
            source="via_native",
            cross={
                "native_per_from": _float(native_per_from),
                "usd_per_from": float(native_per_from) * rate if native_per_from is not None else None,
            },
            diagnostics={
                "sell_leg": {"pool_id": sell.candidate.pool.pool_id, "method": sell.method},
                "buy_leg": {"pool_id": buy.candidate.pool.pool_id, "method": buy.method},
                "formula": formula,
            },
        )

    @staticmethod
    def _rationale(side: LegSide, method: str) -> str:
        if method == "simulation":
            return "max simulated output"
        if side == LegSide.BUY:
            return "min price (tiebreak: highest TVL)"
        return "max price (tiebreak: highest TVL)"

"""Constant-product pool math on exact decimals."""

from decimal import Decimal
from typing import Optional
import re

from utils.decimal_utils import Number, to_decimal

XYK_FEE = Decimal("0.003")
CONCENTRATED_FEE = Decimal("0.005")
DEFAULT_FEE = Decimal("0.01")

_BPS_SUFFIX_RE = re.compile(r"_([0-9]+)$")


def fee_for_pair_type(pair_type: Optional[str]) -> Decimal:
    """Fee fraction charged on input for a pair type.

    ``xyk`` is 0.3%, ``concentrated`` 0.5%, a ``..._NN`` suffix means NN
    basis points and anything else gets 1%.
    """
    normalized = (pair_type or "").strip().lower()

    match = _BPS_SUFFIX_RE.search(normalized)
    if match:
        return Decimal(match.group(1)) / Decimal(10000)
    if normalized == "concentrated":
        return CONCENTRATED_FEE
    if normalized == "xyk":
        return XYK_FEE
    return DEFAULT_FEE


def simulate_swap(amount_in: Number, reserve_in: Number, reserve_out: Number, fee: Number) -> Decimal:
    """Output of a fee-on-input constant-product swap.

    ``out = a(1-f) * R_out / (R_in + a(1-f))``. Zero whenever an input is
    missing or not positive, or the fee consumes the whole input.
    """
    a = to_decimal(amount_in)
    r_in = to_decimal(reserve_in)
    r_out = to_decimal(reserve_out)
    f = to_decimal(fee)
    if a is None or r_in is None or r_out is None or f is None:
        return Decimal(0)
    if a <= 0 or r_in <= 0 or r_out <= 0 or f < 0 or f >= 1:
        return Decimal(0)

    effective_in = a * (Decimal(1) - f)
    return effective_in * r_out / (r_in + effective_in)


def mid_price(base_reserve: Number, quote_reserve: Number) -> Optional[Decimal]:
    """Quote per base at the current reserves."""
    base = to_decimal(base_reserve)
    quote = to_decimal(quote_reserve)
    if base is None or quote is None or base <= 0 or quote <= 0:
        return None
    return quote / base


def price_impact(executed_price: Optional[Decimal], mid: Optional[Decimal]) -> Optional[Decimal]:
    """Relative distance of the executed price from mid.

    Positive when a buy pays above mid, negative when a sell receives
    below mid.
    """
    if executed_price is None or mid is None or mid == 0:
        return None
    return (executed_price - mid) / mid

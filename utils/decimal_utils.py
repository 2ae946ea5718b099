"""
Decimal utilities for display-unit conversion and price formatting.
Prevents scientific notation and keeps raw chain integers exact.
"""

from decimal import Decimal, InvalidOperation, getcontext
from typing import Optional, Union

# Raw amounts reach 10^30 and beyond; keep every digit
getcontext().prec = 50

Number = Union[str, int, float, Decimal]


class PriceFormatter:
    """Utility class for display conversion and price formatting."""

    @staticmethod
    def to_decimal(value: Optional[Number]) -> Optional[Decimal]:
        """Exact Decimal for a raw value, None when it is missing or not a finite number."""
        if value is None or value == "":
            return None
        try:
            result = Decimal(str(value))
        except (InvalidOperation, ValueError, TypeError):
            return None
        return result if result.is_finite() else None

    @staticmethod
    def to_display(raw: Optional[Number], exponent: int) -> Optional[Decimal]:
        """
        Scale a raw integer amount into display units.

        Args:
            raw: Raw base-unit amount
            exponent: Token exponent

        Returns:
            ``raw / 10^exponent`` or None when ``raw`` is not a number
        """
        amount = PriceFormatter.to_decimal(raw)
        if amount is None:
            return None
        return amount / (Decimal(10) ** int(exponent or 0))

    @staticmethod
    def price_from_reserves(
        base_reserve: Number,
        quote_reserve: Number,
        base_exponent: int,
        quote_exponent: int
    ) -> Optional[Decimal]:
        """
        Quote-per-base price from pool reserves in display units.

        Returns:
            ``(Rq / 10^qexp) / (Rb / 10^bexp)``, or None unless both legs are positive
        """
        base = PriceFormatter.to_display(base_reserve, base_exponent)
        quote = PriceFormatter.to_display(quote_reserve, quote_exponent)
        if base is None or quote is None or base <= 0 or quote <= 0:
            return None
        return quote / base

    @staticmethod
    def format_price(value: Optional[Number], max_decimals: int = 18) -> str:
        """
        Format price to avoid scientific notation.

        Args:
            value: Price value to format
            max_decimals: Maximum decimal places to keep

        Returns:
            String representation without scientific notation
        """
        decimal_value = PriceFormatter.to_decimal(value)
        if decimal_value is None or decimal_value == 0:
            return "0"

        if abs(decimal_value) < Decimal(f"1e-{max_decimals}"):
            return "0"

        formatted = format(decimal_value, f'.{max_decimals}f').rstrip('0').rstrip('.')
        if not formatted or formatted in ('.', '-0'):
            return "0"
        return formatted


# Convenient functions for direct use
def to_decimal(value: Optional[Number]) -> Optional[Decimal]:
    """Exact Decimal or None."""
    return PriceFormatter.to_decimal(value)

def to_display(raw: Optional[Number], exponent: int) -> Optional[Decimal]:
    """Raw amount scaled to display units."""
    return PriceFormatter.to_display(raw, exponent)

def price_from_reserves(base_reserve, quote_reserve, base_exponent: int, quote_exponent: int) -> Optional[Decimal]:
    """Quote-per-base price from reserves."""
    return PriceFormatter.price_from_reserves(base_reserve, quote_reserve, base_exponent, quote_exponent)

def format_price(value: Optional[Number], max_decimals: int = 18) -> str:
    """Format price value to avoid scientific notation."""
    return PriceFormatter.format_price(value, max_decimals)

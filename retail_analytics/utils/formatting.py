"""Italian display labels for report payloads."""

from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

from retail_analytics.utils.normalize import quantize_money, to_decimal

NOT_AVAILABLE = 'N/D'
UNKNOWN_BRAND_LABEL = 'Unknown'

# 1,234.56 -> 1.234,56
_ITALIAN_SEPARATORS = str.maketrans({',': '.', '.': ','})


def _italian(value: Decimal, decimals: int) -> str:
    return f"{abs(value):,.{decimals}f}".translate(_ITALIAN_SEPARATORS)


def format_currency_eur(value: Any) -> str:
    """``€ 1.234,56``; the minus sign goes before the euro sign."""
    amount = quantize_money(value)
    return f"{'-' if amount < 0 else ''}€ {_italian(amount, 2)}"


def format_percent(value: Any, decimals: int = 1) -> str:
    """Percentages for reports; a missing value (e.g. margin without inventory) is N/D."""
    if value is None:
        return NOT_AVAILABLE
    rounded = to_decimal(value).quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_HALF_UP)
    return f"{'-' if rounded < 0 else ''}{_italian(rounded, decimals)}%"


def brand_label(brand: Optional[str]) -> str:
    if brand is None or not str(brand).strip():
        return UNKNOWN_BRAND_LABEL
    return str(brand).strip()

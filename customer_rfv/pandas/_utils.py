"""Cell conversions shared by the DataFrame adapters."""

from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

import pandas as pd  # type: ignore

CENTS = Decimal("0.01")


def money_to_float(value: Decimal) -> float:
    """Monetary Decimal as a float column value."""
    return float(value)


def float_to_money(value: Any) -> Decimal:
    """Convert a float cell back to a monetary Decimal rounded to cents.

    The float goes through ``str`` so that the shortest repr, not the binary
    expansion, is rounded.

    Raises:
        TypeError: If value is not numeric

    Example:
        >>> float_to_money(123.45)
        Decimal('123.45')
        >>> float_to_money(0.1 + 0.2)
        Decimal('0.30')
        >>> float_to_money(2.675)
        Decimal('2.68')
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"Expected numeric type, got {type(value)}")
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


def text_or_none(value: Any) -> Optional[str]:
    """Optional text cell: NaN, None and "" become None."""
    if value is None or pd.isna(value) or value == "":
        return None
    return str(value)

"""Cell normalisation for heterogeneous spreadsheet exports.

Spreadsheet exports mix native numbers, native dates, spreadsheet date
serials and free text in Brazilian or US notation. The converters in this
module are total functions: they never raise. Each returns a best-effort
value together with a ``trusted`` flag so the aggregator can count degraded
cells instead of silently dropping them.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import numpy as np
import pandas as pd

# Day zero of the 1900 date system (includes the Lotus 1-2-3 leap-year bug)
EXCEL_EPOCH = date(1899, 12, 30)

# Returned when a date cell cannot be interpreted
FALLBACK_DATE = date(1970, 1, 1)

# Two-digit years above the pivot belong to the 1900s, the rest to the 2000s
TWO_DIGIT_YEAR_PIVOT = 50

ZERO = Decimal("0")

_DATE_SEPARATORS = re.compile(r"[-/.]")
_CURRENCY_NOISE = re.compile(r"R\$|US\$|[$€£\s\u00a0]")
_PLAIN_NUMBER = re.compile(r"-?(\d+(\.\d*)?|\.\d+)")


@dataclass(frozen=True, slots=True)
class ParsedDate:
    """Result of :func:`parse_date`.

    Attributes
    ----------
    value:
        Calendar date, or :data:`FALLBACK_DATE` when the cell was unusable.
    trusted:
        False when ``value`` is the fallback sentinel.
    """

    value: date
    trusted: bool


@dataclass(frozen=True, slots=True)
class ParsedAmount:
    """Result of :func:`parse_amount`.

    Attributes
    ----------
    value:
        Non-negative monetary amount. Unparsable or negative input yields 0.
    trusted:
        False when the cell was blank, unparsable or negative.
    """

    value: Decimal
    trusted: bool


def is_blank(value: Any) -> bool:
    """Return True for ``None``, empty strings and pandas missing markers."""
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def _is_number(value: Any) -> bool:
    if isinstance(value, (bool, np.bool_)):
        return False
    return isinstance(value, (int, float, Decimal, np.number))


def clean_text(value: Any) -> str:
    """Render a cell as trimmed text.

    Integral floats are rendered without the trailing ``.0`` because phone
    numbers and document ids are often read back from spreadsheets as floats.
    """
    if is_blank(value):
        return ""
    if isinstance(value, (float, np.floating)) and float(value).is_integer():
        return str(int(value))
    return str(value).replace("\u00a0", " ").strip()


def parse_date(value: Any) -> ParsedDate:
    """Interpret a cell as a calendar date.

    Accepted inputs:

    - native ``datetime``/``date`` values (datetimes are truncated to the date)
    - spreadsheet serial numbers in the 1900 date system
    - text split on ``-``, ``/`` or ``.`` into three numeric parts. A 4-digit
      first part means year-month-day; a 4-digit last part means
      day-month-year; a 2-digit last part is a day-month-year with a two-digit
      year (``> 50`` is 19xx, otherwise 20xx).

    Anything else returns :data:`FALLBACK_DATE` with ``trusted=False``.

    Examples
    --------
    >>> parse_date("15/03/2024")
    ParsedDate(value=datetime.date(2024, 3, 15), trusted=True)
    >>> parse_date(45366)
    ParsedDate(value=datetime.date(2024, 3, 15), trusted=True)
    >>> parse_date("invalid").trusted
    False
    """
    if is_blank(value):
        return ParsedDate(FALLBACK_DATE, False)
    if isinstance(value, datetime):
        return ParsedDate(value.date(), True)
    if isinstance(value, date):
        return ParsedDate(value, True)
    if _is_number(value):
        return _date_from_serial(value)
    if isinstance(value, str):
        return _date_from_text(value)
    return ParsedDate(FALLBACK_DATE, False)


def _date_from_serial(serial: Any) -> ParsedDate:
    try:
        days = int(float(serial))
        if days <= 0:
            return ParsedDate(FALLBACK_DATE, False)
        return ParsedDate(EXCEL_EPOCH + timedelta(days=days), True)
    except (OverflowError, ValueError):
        return ParsedDate(FALLBACK_DATE, False)


def _expand_two_digit_year(year: int) -> int:
    return 1900 + year if year > TWO_DIGIT_YEAR_PIVOT else 2000 + year


def _date_from_text(text: str) -> ParsedDate:
    token = text.split()[0]
    if "T" in token:
        token = token.split("T", 1)[0]

    parts = _DATE_SEPARATORS.split(token)
    if len(parts) != 3 or not all(part.isdigit() for part in parts):
        return ParsedDate(FALLBACK_DATE, False)

    first, middle, last = parts
    if len(first) == 4:
        year, month, day = int(first), int(middle), int(last)
    elif len(last) == 4:
        day, month, year = int(first), int(middle), int(last)
    elif len(last) == 2:
        day, month, year = int(first), int(middle), _expand_two_digit_year(int(last))
    else:
        return ParsedDate(FALLBACK_DATE, False)

    try:
        return ParsedDate(date(year, month, day), True)
    except ValueError:
        return ParsedDate(FALLBACK_DATE, False)


def parse_amount(value: Any) -> ParsedAmount:
    """Interpret a cell as a non-negative monetary amount.

    Native numbers are used as-is. Text is stripped of currency symbols and
    whitespace, then decimal separators are disambiguated:

    - both ``.`` and ``,`` present: the right-most one is the decimal
      separator and the other is a thousands separator
    - only ``,``: one or two digits after a single comma are decimals,
      otherwise commas are thousands separators
    - only ``.``: several dots are thousands separators, a single dot is the
      decimal separator

    Negative or unparsable values clamp to zero with ``trusted=False``.

    Examples
    --------
    >>> parse_amount("R$ 1.234,56").value
    Decimal('1234.56')
    >>> parse_amount("1,234.56").value
    Decimal('1234.56')
    >>> parse_amount("abc")
    ParsedAmount(value=Decimal('0'), trusted=False)
    """
    if is_blank(value):
        return ParsedAmount(ZERO, False)
    if _is_number(value):
        return _clamp(Decimal(str(value)))
    if isinstance(value, str):
        cleaned = _CURRENCY_NOISE.sub("", value)
        normalized = _normalize_separators(cleaned)
        if not _PLAIN_NUMBER.fullmatch(normalized):
            return ParsedAmount(ZERO, False)
        return _clamp(Decimal(normalized))
    return ParsedAmount(ZERO, False)


def _clamp(amount: Decimal) -> ParsedAmount:
    if not amount.is_finite() or amount < 0:
        return ParsedAmount(ZERO, False)
    return ParsedAmount(amount, True)


def _normalize_separators(text: str) -> str:
    last_comma = text.rfind(",")
    last_dot = text.rfind(".")

    if last_comma != -1 and last_dot != -1:
        if last_comma > last_dot:
            return text.replace(".", "").replace(",", ".")
        return text.replace(",", "")

    if last_comma != -1:
        fraction = text[last_comma + 1 :]
        if text.count(",") == 1 and 1 <= len(fraction) <= 2:
            return text.replace(",", ".")
        return text.replace(",", "")

    if text.count(".") > 1:
        return text.replace(".", "")
    return text


def _as_integer(value: Any) -> Optional[int]:
    if is_blank(value) or isinstance(value, (bool, np.bool_)):
        return None
    if _is_number(value):
        number = Decimal(str(value))
    elif isinstance(value, str):
        try:
            number = Decimal(value.strip().replace(",", "."))
        except InvalidOperation:
            return None
    else:
        return None
    if not number.is_finite() or number != number.to_integral_value():
        return None
    return int(number)


def parse_score(value: Any) -> Optional[int]:
    """Parse a pre-computed 1-5 score cell.

    Returns the integer value (range checking is left to the scorer) or None
    when the cell is blank or not integral.
    """
    return _as_integer(value)


def parse_count(value: Any) -> Optional[int]:
    """Parse a non-negative integer count such as a pre-computed purchase total."""
    number = _as_integer(value)
    if number is None or number < 0:
        return None
    return number

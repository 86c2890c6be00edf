"""Per-customer aggregation of normalised spreadsheet rows."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional

import structlog

from customer_rfv.foundation.columns import ColumnMapping
from customer_rfv.foundation.normalization import (
    FALLBACK_DATE,
    ZERO,
    clean_text,
    parse_amount,
    parse_count,
    parse_date,
    parse_score,
)

logger = structlog.get_logger(__name__)

CONTACT_FIELDS = ("phone", "whatsapp", "email", "cpf", "record_id")


def normalize_customer_key(name: str) -> str:
    """Natural key of a customer: trimmed, lower-cased name."""
    return name.strip().lower()


@dataclass(slots=True)
class CustomerAggregate:
    """Accumulated purchase history of one customer.

    Attributes
    ----------
    customer_key:
        Normalised name (see :func:`normalize_customer_key`)
    purchase_dates:
        One date per source row, in source order. Unparsable dates appear as
        the fallback sentinel.
    amounts:
        One amount per source row, possibly zero.
    phone, whatsapp, email, cpf, record_id:
        Last non-empty contact values seen for this customer
    total_purchases, total_value, average_ticket, days_since_last_purchase,
    first_purchase_date, recency_score, frequency_score, value_score,
    segment_override:
        Pre-computed values carried over from the source, last non-empty wins
    """

    customer_key: str
    purchase_dates: list[date] = field(default_factory=list)
    amounts: list[Decimal] = field(default_factory=list)
    phone: Optional[str] = None
    whatsapp: Optional[str] = None
    email: Optional[str] = None
    cpf: Optional[str] = None
    record_id: Optional[str] = None
    total_purchases: Optional[int] = None
    total_value: Optional[Decimal] = None
    average_ticket: Optional[Decimal] = None
    days_since_last_purchase: Optional[int] = None
    first_purchase_date: Optional[date] = None
    recency_score: Optional[int] = None
    frequency_score: Optional[int] = None
    value_score: Optional[int] = None
    segment_override: Optional[str] = None

    @property
    def row_count(self) -> int:
        return len(self.purchase_dates)


@dataclass(frozen=True)
class AggregationResult:
    """Aggregates plus the row counters surfaced to the operator.

    Attributes
    ----------
    aggregates:
        One aggregate per distinct customer key, in first-seen order
    total_rows:
        Number of data rows consumed
    skipped_no_name:
        Rows dropped because the customer name was blank
    skipped_no_date:
        Rows whose date fell back to the sentinel (still aggregated)
    skipped_zero_amount:
        Rows whose amount resolved to zero (still aggregated)
    """

    aggregates: tuple[CustomerAggregate, ...]
    total_rows: int
    skipped_no_name: int
    skipped_no_date: int
    skipped_zero_amount: int

    @property
    def unique_customers(self) -> int:
        return len(self.aggregates)

    def counters(self) -> dict[str, int]:
        return {
            "total_rows": self.total_rows,
            "skipped_no_name": self.skipped_no_name,
            "skipped_no_date": self.skipped_no_date,
            "skipped_zero_amount": self.skipped_zero_amount,
            "unique_customers": self.unique_customers,
        }


def _cell(row: Mapping[str, Any], label: str) -> Any:
    return row.get(label) if label else None


def _resolve_date(row: Mapping[str, Any], mapping: ColumnMapping, today: date) -> Optional[date]:
    if mapping.purchase_date:
        parsed = parse_date(_cell(row, mapping.purchase_date))
        if parsed.trusted:
            return parsed.value
    if mapping.days_since_last_purchase:
        days = parse_count(_cell(row, mapping.days_since_last_purchase))
        if days is not None:
            return today - timedelta(days=days)
    return None


def _carry_overrides(aggregate: CustomerAggregate, row: Mapping[str, Any], mapping: ColumnMapping) -> None:
    for contact in CONTACT_FIELDS:
        value = clean_text(_cell(row, getattr(mapping, contact)))
        if value:
            setattr(aggregate, contact, value)

    if mapping.total_purchases:
        count = parse_count(_cell(row, mapping.total_purchases))
        if count is not None:
            aggregate.total_purchases = count
    for money_field in ("total_value", "average_ticket"):
        label = getattr(mapping, money_field)
        if label:
            parsed = parse_amount(_cell(row, label))
            if parsed.trusted:
                setattr(aggregate, money_field, parsed.value)
    if mapping.days_since_last_purchase:
        days = parse_count(_cell(row, mapping.days_since_last_purchase))
        if days is not None:
            aggregate.days_since_last_purchase = days
    if mapping.first_purchase_date:
        first = parse_date(_cell(row, mapping.first_purchase_date))
        if first.trusted:
            aggregate.first_purchase_date = first.value
    for score_field in ("recency_score", "frequency_score", "value_score"):
        label = getattr(mapping, score_field)
        if label:
            score = parse_score(_cell(row, label))
            if score is not None:
                setattr(aggregate, score_field, score)
    if mapping.segment_override:
        label_text = clean_text(_cell(row, mapping.segment_override))
        if label_text:
            aggregate.segment_override = label_text


def aggregate_customers(
    rows: Iterable[Mapping[str, Any]],
    mapping: ColumnMapping,
    now: datetime,
) -> AggregationResult:
    """Group rows into one :class:`CustomerAggregate` per customer.

    Rows are grouped by the trimmed, lower-cased customer name. For each row:

    - a blank name drops the row (``skipped_no_name``)
    - the date comes from ``purchase_date``; failing that from
      ``now - days_since_last_purchase``; failing both the sentinel date is
      used and ``skipped_no_date`` is incremented
    - the amount comes from ``amount`` (or ``total_value`` when ``amount`` is
      unmapped); a zero amount increments ``skipped_zero_amount``
    - contact and pre-computed fields overwrite earlier values when non-empty

    Dated-by-sentinel and zero-amount rows still count as purchases.

    Parameters
    ----------
    rows:
        Label-keyed rows, e.g. from :func:`customer_rfv.foundation.columns.split_grid`
    mapping:
        Column mapping; must satisfy :meth:`ColumnMapping.validate_for`
    now:
        Processing reference time, used to turn day counts into dates

    Examples
    --------
    >>> from datetime import datetime
    >>> mapping = ColumnMapping(customer_name="Nome", purchase_date="Data", amount="Valor")
    >>> result = aggregate_customers(
    ...     [
    ...         {"Nome": "Maria Silva", "Data": "01/02/2024", "Valor": "100,00"},
    ...         {"Nome": "MARIA SILVA", "Data": "05/03/2024", "Valor": "50,00"},
    ...     ],
    ...     mapping,
    ...     datetime(2024, 6, 1),
    ... )
    >>> result.unique_customers, result.aggregates[0].row_count
    (1, 2)
    """
    mapping.validate_for()
    today = now.date()
    amount_label = mapping.amount or mapping.total_value

    grouped: dict[str, CustomerAggregate] = {}
    total_rows = 0
    skipped_no_name = 0
    skipped_no_date = 0
    skipped_zero_amount = 0

    for row in rows:
        total_rows += 1

        name = clean_text(_cell(row, mapping.customer_name))
        if not name:
            skipped_no_name += 1
            continue

        purchase_date = _resolve_date(row, mapping, today)
        if purchase_date is None:
            purchase_date = FALLBACK_DATE
            skipped_no_date += 1

        amount = parse_amount(_cell(row, amount_label)).value
        if amount == ZERO:
            skipped_zero_amount += 1

        key = normalize_customer_key(name)
        aggregate = grouped.get(key)
        if aggregate is None:
            aggregate = grouped[key] = CustomerAggregate(customer_key=key)

        aggregate.purchase_dates.append(purchase_date)
        aggregate.amounts.append(amount)
        _carry_overrides(aggregate, row, mapping)

    result = AggregationResult(
        aggregates=tuple(grouped.values()),
        total_rows=total_rows,
        skipped_no_name=skipped_no_name,
        skipped_no_date=skipped_no_date,
        skipped_zero_amount=skipped_zero_amount,
    )
    logger.info("rows_aggregated", **result.counters())
    return result

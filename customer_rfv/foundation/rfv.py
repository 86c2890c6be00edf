"""RFV (Recency-Frequency-Value) metrics and quintile scoring.

RFV analysis ranks every customer of a batch on three dimensions:
- Recency: How many days since the last purchase?
- Frequency: How many purchases?
- Value: How much was spent in total?

Scores are relative to the whole population of a run, so scoring is a
two-pass operation: build the population-wide rankings first, then assign
each customer's scores. Pre-computed scores found in the source export take
precedence over the computed ones when they are valid.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Sequence

import numpy as np
import pandas as pd  # Used for population-wide ranking

from customer_rfv.foundation.aggregation import CustomerAggregate

CENTS = Decimal("0.01")

MIN_SCORE = 1
MAX_SCORE = 5


@dataclass(frozen=True)
class RFVMetrics:
    """Raw RFV inputs for a single customer.

    Attributes
    ----------
    customer_key:
        Normalised customer name
    days_since_last_purchase:
        Days between the last purchase and the processing date
    total_purchases:
        Number of purchases
    total_value:
        Total spend
    average_ticket:
        total_value / max(total_purchases, 1)
    first_purchase_date:
        Earliest purchase date
    last_purchase_date:
        Latest purchase date
    recency_override, frequency_override, value_override:
        Pre-computed scores carried from the source, if any
    """

    customer_key: str
    days_since_last_purchase: int
    total_purchases: int
    total_value: Decimal
    average_ticket: Decimal
    first_purchase_date: date
    last_purchase_date: date
    recency_override: Optional[int] = None
    frequency_override: Optional[int] = None
    value_override: Optional[int] = None

    def __post_init__(self) -> None:
        """Validate RFV metrics."""
        if self.days_since_last_purchase < 0:
            raise ValueError(
                f"Days since last purchase cannot be negative: {self.days_since_last_purchase} "
                f"(customer_key={self.customer_key})"
            )
        if self.total_purchases < 0:
            raise ValueError(
                f"Total purchases cannot be negative: {self.total_purchases} (customer_key={self.customer_key})"
            )
        if self.total_value < 0:
            raise ValueError(
                f"Total value cannot be negative: {self.total_value} (customer_key={self.customer_key})"
            )
        if self.average_ticket < 0:
            raise ValueError(
                f"Average ticket cannot be negative: {self.average_ticket} (customer_key={self.customer_key})"
            )


def _to_cents(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def _metrics_for(aggregate: CustomerAggregate, today: date) -> RFVMetrics:
    dates = aggregate.purchase_dates
    last_purchase = max(dates)
    first_purchase = aggregate.first_purchase_date or min(dates)

    if aggregate.total_purchases is not None:
        total_purchases = aggregate.total_purchases
    else:
        total_purchases = len(dates)

    if aggregate.total_value is not None:
        total_value = _to_cents(aggregate.total_value)
    else:
        total_value = _to_cents(sum(aggregate.amounts, Decimal("0")))

    if aggregate.average_ticket is not None:
        average_ticket = _to_cents(aggregate.average_ticket)
    else:
        average_ticket = _to_cents(total_value / max(total_purchases, 1))

    if aggregate.days_since_last_purchase is not None:
        days_since = aggregate.days_since_last_purchase
    else:
        days_since = max((today - last_purchase).days, 0)

    return RFVMetrics(
        customer_key=aggregate.customer_key,
        days_since_last_purchase=days_since,
        total_purchases=total_purchases,
        total_value=total_value,
        average_ticket=average_ticket,
        first_purchase_date=first_purchase,
        last_purchase_date=last_purchase,
        recency_override=aggregate.recency_score,
        frequency_override=aggregate.frequency_score,
        value_override=aggregate.value_score,
    )


def calculate_rfv_metrics(
    aggregates: Sequence[CustomerAggregate],
    now: datetime,
) -> list[RFVMetrics]:
    """Derive RFV metrics from customer aggregates.

    Pre-computed totals from the source (``total_purchases``, ``total_value``,
    ``average_ticket``, ``days_since_last_purchase``, ``first_purchase_date``)
    replace the values derived from the individual rows.

    Parameters
    ----------
    aggregates:
        Output of :func:`customer_rfv.foundation.aggregation.aggregate_customers`
    now:
        Processing reference time. Only its date is used.

    Returns
    -------
    list[RFVMetrics]
        One entry per aggregate, sorted by customer_key
    """
    today = now.date()
    metrics = [_metrics_for(aggregate, today) for aggregate in aggregates]
    metrics.sort(key=lambda m: m.customer_key)
    return metrics


@dataclass(frozen=True)
class RFVScore:
    """RFV scores (1-5) for a single customer.

    Attributes
    ----------
    customer_key:
        Normalised customer name
    recency_score:
        Final recency score (5 = most recent)
    frequency_score:
        Final frequency score (5 = most purchases)
    value_score:
        Final value score (5 = highest spend)
    computed_recency, computed_frequency, computed_value:
        Quintile scores before override resolution
    rfv_score:
        Combined score string (e.g., "555" for the best customers)
    """

    customer_key: str
    recency_score: int
    frequency_score: int
    value_score: int
    computed_recency: int
    computed_frequency: int
    computed_value: int
    rfv_score: str

    def __post_init__(self) -> None:
        """Validate RFV scores."""
        for score_name in (
            "recency_score",
            "frequency_score",
            "value_score",
            "computed_recency",
            "computed_frequency",
            "computed_value",
        ):
            score_value = getattr(self, score_name)
            if not MIN_SCORE <= score_value <= MAX_SCORE:
                raise ValueError(
                    f"{score_name} must be between 1 and 5: {score_value} (customer_key={self.customer_key})"
                )
        expected = f"{self.recency_score}{self.frequency_score}{self.value_score}"
        if self.rfv_score != expected:
            raise ValueError(
                f"rfv_score ({self.rfv_score}) does not match r/f/v scores ({expected}) "
                f"(customer_key={self.customer_key})"
            )

    @property
    def overridden(self) -> bool:
        return (self.recency_score, self.frequency_score, self.value_score) != (
            self.computed_recency,
            self.computed_frequency,
            self.computed_value,
        )


def quintile_scores(values: Sequence[float], inverse: bool = False) -> list[int]:
    """Map each value to a 1-5 score by its rank in the population.

    The rank of a value is the first index of the ascending-sorted population
    holding a value >= it, so ties share the lowest rank. The percentile
    ``rank / n`` becomes ``ceil(percentile * 5)`` clamped to [1, 5]; with
    ``inverse=True`` the percentile is ``1 - rank / n`` so that small values
    score high. Integer arithmetic keeps the bucket boundaries exact.

    Examples
    --------
    >>> quintile_scores([1, 2, 3, 4, 5, 6, 7, 8, 9, 10], inverse=True)
    [5, 5, 4, 4, 3, 3, 2, 2, 1, 1]
    >>> quintile_scores([10, 10, 10])
    [1, 1, 1]
    """
    population = len(values)
    if population == 0:
        return []

    series = pd.Series(values, dtype="float64")
    rank = series.rank(method="min").astype("int64") - 1
    numerator = (population - rank) if inverse else rank
    buckets = -(-(numerator * 5) // population)
    return np.clip(buckets.to_numpy(), MIN_SCORE, MAX_SCORE).astype(int).tolist()


def select_score(override: Optional[int], computed: int) -> int:
    """Return ``override`` when it is a valid 1-5 score, else ``computed``."""
    if override is not None and MIN_SCORE <= override <= MAX_SCORE:
        return override
    return computed


def calculate_rfv_scores(rfv_metrics: Sequence[RFVMetrics]) -> list[RFVScore]:
    """Score RFV metrics into 1-5 quintiles across the whole population.

    Recency is inverted (fewer days since the last purchase = higher score);
    frequency and value score directly. A valid pre-computed score on the
    metrics wins over the computed quintile for that dimension.

    Parameters
    ----------
    rfv_metrics:
        Metrics for the complete population of the run

    Returns
    -------
    list[RFVScore]
        RFV scores for each customer, sorted by customer_key

    Examples
    --------
    >>> from datetime import date
    >>> from decimal import Decimal
    >>> metrics = [
    ...     RFVMetrics("ana", 5, 4, Decimal("400"), Decimal("100"), date(2024, 1, 1), date(2024, 5, 27)),
    ...     RFVMetrics("bia", 90, 1, Decimal("50"), Decimal("50"), date(2024, 3, 3), date(2024, 3, 3)),
    ... ]
    >>> scores = calculate_rfv_scores(metrics)
    >>> scores[0].rfv_score, scores[1].rfv_score
    ('533', '311')
    """
    if not rfv_metrics:
        return []

    recency = quintile_scores([m.days_since_last_purchase for m in rfv_metrics], inverse=True)
    frequency = quintile_scores([m.total_purchases for m in rfv_metrics])
    value = quintile_scores([float(m.total_value) for m in rfv_metrics])

    rfv_scores: list[RFVScore] = []
    for metrics, r, f, v in zip(rfv_metrics, recency, frequency, value):
        final_r = select_score(metrics.recency_override, r)
        final_f = select_score(metrics.frequency_override, f)
        final_v = select_score(metrics.value_override, v)
        rfv_scores.append(
            RFVScore(
                customer_key=metrics.customer_key,
                recency_score=final_r,
                frequency_score=final_f,
                value_score=final_v,
                computed_recency=r,
                computed_frequency=f,
                computed_value=v,
                rfv_score=f"{final_r}{final_f}{final_v}",
            )
        )

    rfv_scores.sort(key=lambda s: s.customer_key)
    return rfv_scores

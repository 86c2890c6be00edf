"""The per-customer RFV record produced by a segmentation run.

One record exists per distinct customer, identified by the normalised name.
Records are recomputed on every upload and written whole by the persistence
gateway; nothing else mutates them.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Iterable, Optional, Sequence

from customer_rfv.foundation.aggregation import CustomerAggregate, normalize_customer_key
from customer_rfv.foundation.rfv import MAX_SCORE, MIN_SCORE, RFVMetrics, RFVScore
from customer_rfv.foundation.segments import Segment, resolve_segment

__all__ = [
    "CustomerRFVRecord",
    "build_rfv_records",
    "count_by_segment",
    "display_name",
    "normalize_customer_key",
    "sort_for_display",
]


def display_name(customer_key: str) -> str:
    """Title-case a normalised name word by word (``"maria da silva"`` -> ``"Maria Da Silva"``)."""
    return " ".join(word[:1].upper() + word[1:] for word in customer_key.split(" "))


@dataclass(frozen=True)
class CustomerRFVRecord:
    """Canonical RFV record of one customer.

    Attributes
    ----------
    customer_key:
        Lower-cased, trimmed name; the natural key for upserts
    name:
        Display form of the name
    phone, whatsapp, email, cpf, record_id:
        Optional contact and identity fields
    first_purchase_date, last_purchase_date:
        Purchase window
    total_purchases, total_value, average_ticket:
        Purchase totals; average_ticket = total_value / max(total_purchases, 1)
        unless the source supplied its own
    days_since_last_purchase:
        Relative to the processing time of the run
    recency_score, frequency_score, value_score:
        Scores in [1, 5]
    segment:
        Classified segment, or the recognised override from the source
    """

    customer_key: str
    name: str
    first_purchase_date: date
    last_purchase_date: date
    total_purchases: int
    total_value: Decimal
    average_ticket: Decimal
    days_since_last_purchase: int
    recency_score: int
    frequency_score: int
    value_score: int
    segment: Segment
    phone: Optional[str] = None
    whatsapp: Optional[str] = None
    email: Optional[str] = None
    cpf: Optional[str] = None
    record_id: Optional[str] = None

    def __post_init__(self) -> None:
        """Validate the record."""
        if not self.customer_key:
            raise ValueError("customer_key cannot be empty")
        if self.customer_key != normalize_customer_key(self.customer_key):
            raise ValueError(f"customer_key is not normalised: {self.customer_key!r}")
        for score_name in ("recency_score", "frequency_score", "value_score"):
            score_value = getattr(self, score_name)
            if not MIN_SCORE <= score_value <= MAX_SCORE:
                raise ValueError(
                    f"{score_name} must be between 1 and 5: {score_value} (customer_key={self.customer_key})"
                )
        if self.total_purchases < 0:
            raise ValueError(
                f"Total purchases cannot be negative: {self.total_purchases} (customer_key={self.customer_key})"
            )
        if self.total_value < 0 or self.average_ticket < 0:
            raise ValueError(f"Monetary fields cannot be negative (customer_key={self.customer_key})")
        if self.days_since_last_purchase < 0:
            raise ValueError(
                f"Days since last purchase cannot be negative: {self.days_since_last_purchase} "
                f"(customer_key={self.customer_key})"
            )
        if not isinstance(self.segment, Segment):
            raise TypeError(f"segment must be a Segment, got {self.segment!r}")

    def to_row(self) -> dict[str, Any]:
        """Return column values for storage (native date/Decimal types)."""
        return {
            "customer_key": self.customer_key,
            "name": self.name,
            "phone": self.phone,
            "whatsapp": self.whatsapp,
            "email": self.email,
            "cpf": self.cpf,
            "record_id": self.record_id,
            "first_purchase_date": self.first_purchase_date,
            "last_purchase_date": self.last_purchase_date,
            "total_purchases": self.total_purchases,
            "total_value": self.total_value,
            "average_ticket": self.average_ticket,
            "days_since_last_purchase": self.days_since_last_purchase,
            "recency_score": self.recency_score,
            "frequency_score": self.frequency_score,
            "value_score": self.value_score,
            "segment": self.segment.value,
        }

    def as_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable representation."""
        payload = self.to_row()
        payload["first_purchase_date"] = self.first_purchase_date.isoformat()
        payload["last_purchase_date"] = self.last_purchase_date.isoformat()
        payload["total_value"] = str(self.total_value)
        payload["average_ticket"] = str(self.average_ticket)
        return payload

    @classmethod
    def from_row(cls, row: Any) -> "CustomerRFVRecord":
        """Build a record from a mapping-like storage row."""
        return cls(
            customer_key=row["customer_key"],
            name=row["name"],
            phone=row["phone"],
            whatsapp=row["whatsapp"],
            email=row["email"],
            cpf=row["cpf"],
            record_id=row["record_id"],
            first_purchase_date=row["first_purchase_date"],
            last_purchase_date=row["last_purchase_date"],
            total_purchases=row["total_purchases"],
            total_value=Decimal(str(row["total_value"])),
            average_ticket=Decimal(str(row["average_ticket"])),
            days_since_last_purchase=row["days_since_last_purchase"],
            recency_score=row["recency_score"],
            frequency_score=row["frequency_score"],
            value_score=row["value_score"],
            segment=Segment(row["segment"]),
        )


def build_rfv_records(
    aggregates: Iterable[CustomerAggregate],
    rfv_metrics: Sequence[RFVMetrics],
    rfv_scores: Sequence[RFVScore],
) -> list[CustomerRFVRecord]:
    """Join aggregates, metrics and scores into final records.

    The segment is classified from the final scores; a recognised
    ``segment_override`` carried by the aggregate replaces it.
    """
    aggregates_by_key = {aggregate.customer_key: aggregate for aggregate in aggregates}
    metrics_by_key = {metrics.customer_key: metrics for metrics in rfv_metrics}

    records: list[CustomerRFVRecord] = []
    for score in rfv_scores:
        aggregate = aggregates_by_key[score.customer_key]
        metrics = metrics_by_key[score.customer_key]
        segment = resolve_segment(
            score.recency_score,
            score.frequency_score,
            score.value_score,
            aggregate.segment_override,
        )
        records.append(
            CustomerRFVRecord(
                customer_key=score.customer_key,
                name=display_name(score.customer_key),
                phone=aggregate.phone,
                whatsapp=aggregate.whatsapp,
                email=aggregate.email,
                cpf=aggregate.cpf,
                record_id=aggregate.record_id,
                first_purchase_date=metrics.first_purchase_date,
                last_purchase_date=metrics.last_purchase_date,
                total_purchases=metrics.total_purchases,
                total_value=metrics.total_value,
                average_ticket=metrics.average_ticket,
                days_since_last_purchase=metrics.days_since_last_purchase,
                recency_score=score.recency_score,
                frequency_score=score.frequency_score,
                value_score=score.value_score,
                segment=segment,
            )
        )
    return records


def count_by_segment(records: Iterable[CustomerRFVRecord]) -> dict[str, int]:
    """Number of records per segment name, every segment present, priority order."""
    counts = {segment.value: 0 for segment in Segment}
    for record in records:
        counts[record.segment.value] += 1
    return counts


def sort_for_display(records: Iterable[CustomerRFVRecord]) -> list[CustomerRFVRecord]:
    """Order by segment priority, then highest total value, then key."""
    return sorted(
        records,
        key=lambda r: (r.segment.priority, -r.total_value, r.customer_key),
    )

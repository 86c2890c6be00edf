"""Read interface over the stored customer records.

The presentation layer (dashboards, CRM screens) only depends on this query
contract: filter by segment, value, recency and last-purchase window, free
text search, and sort by one of the numeric columns or the name.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator
from sqlalchemy import Select, func, or_, select

from customer_rfv.foundation.segments import Segment
from customer_rfv.persistence.schema import rfv_customers

SortField = Literal[
    "total_value",
    "average_ticket",
    "total_purchases",
    "days_since_last_purchase",
    "name",
]


class CustomerQuery(BaseModel):
    """Filters and ordering for :meth:`RFVCustomerStore.query_customers`."""

    segment: Optional[Segment] = Field(default=None, description="Only customers of this segment")
    min_value: Optional[Decimal] = Field(default=None, ge=0, description="Minimum total value (inclusive)")
    max_value: Optional[Decimal] = Field(default=None, ge=0, description="Maximum total value (inclusive)")
    min_days: Optional[int] = Field(
        default=None, ge=0, description="Minimum days since last purchase (inclusive)"
    )
    max_days: Optional[int] = Field(
        default=None, ge=0, description="Maximum days since last purchase (inclusive)"
    )
    purchased_from: Optional[date] = Field(default=None, description="Last purchase on or after this date")
    purchased_to: Optional[date] = Field(default=None, description="Last purchase on or before this date")
    search: Optional[str] = Field(
        default=None, description="Case-insensitive substring of name, phone or email"
    )
    sort_by: SortField = Field(default="total_value", description="Column to order by")
    descending: bool = Field(default=True, description="Sort direction")
    limit: Optional[int] = Field(default=None, gt=0, description="Maximum number of records")

    @model_validator(mode="after")
    def _check_ranges(self) -> "CustomerQuery":
        for low, high in (
            ("min_value", "max_value"),
            ("min_days", "max_days"),
            ("purchased_from", "purchased_to"),
        ):
            low_value = getattr(self, low)
            high_value = getattr(self, high)
            if low_value is not None and high_value is not None and low_value > high_value:
                raise ValueError(f"{low} ({low_value}) must not exceed {high} ({high_value})")
        return self


def build_customer_select(query: CustomerQuery) -> Select:
    """Translate a :class:`CustomerQuery` into a SELECT on ``rfv_customers``.

    Ties on the sort column are broken by ``customer_key`` so results are
    stable across calls.
    """
    table = rfv_customers
    statement = select(table)

    if query.segment is not None:
        statement = statement.where(table.c.segment == query.segment.value)
    if query.min_value is not None:
        statement = statement.where(table.c.total_value >= query.min_value)
    if query.max_value is not None:
        statement = statement.where(table.c.total_value <= query.max_value)
    if query.min_days is not None:
        statement = statement.where(table.c.days_since_last_purchase >= query.min_days)
    if query.max_days is not None:
        statement = statement.where(table.c.days_since_last_purchase <= query.max_days)
    if query.purchased_from is not None:
        statement = statement.where(table.c.last_purchase_date >= query.purchased_from)
    if query.purchased_to is not None:
        statement = statement.where(table.c.last_purchase_date <= query.purchased_to)
    if query.search:
        pattern = f"%{query.search.strip().lower()}%"
        statement = statement.where(
            or_(
                table.c.customer_key.like(pattern),
                func.lower(table.c.phone).like(pattern),
                func.lower(table.c.whatsapp).like(pattern),
                func.lower(table.c.email).like(pattern),
            )
        )

    sort_column = table.c[query.sort_by]
    statement = statement.order_by(
        sort_column.desc() if query.descending else sort_column.asc(),
        table.c.customer_key.asc(),
    )
    if query.limit is not None:
        statement = statement.limit(query.limit)
    return statement

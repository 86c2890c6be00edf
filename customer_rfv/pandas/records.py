"""Pandas DataFrame adapters for RFV records and aggregates."""

from datetime import datetime
from typing import List, Optional, Sequence

import pandas as pd  # type: ignore

from customer_rfv.foundation.aggregation import CustomerAggregate
from customer_rfv.foundation.columns import ColumnMapping
from customer_rfv.foundation.records import CustomerRFVRecord
from customer_rfv.foundation.segments import Segment
from ._utils import float_to_money, money_to_float, text_or_none

RECORD_COLUMNS = [
    "customer_key",
    "name",
    "phone",
    "whatsapp",
    "email",
    "cpf",
    "record_id",
    "first_purchase_date",
    "last_purchase_date",
    "total_purchases",
    "total_value",
    "average_ticket",
    "days_since_last_purchase",
    "recency_score",
    "frequency_score",
    "value_score",
    "rfv_score",
    "segment",
]

_REQUIRED_RECORD_COLUMNS = [column for column in RECORD_COLUMNS if column != "rfv_score"]
_OPTIONAL_TEXT_COLUMNS = ["phone", "whatsapp", "email", "cpf", "record_id"]


def records_to_dataframe(records: Sequence[CustomerRFVRecord]) -> pd.DataFrame:
    """Convert RFV records to a pandas DataFrame.

    Args:
        records: Sequence of CustomerRFVRecord objects

    Returns:
        DataFrame with one row per record, in the given order. Monetary
        columns are floats, dates are ``datetime.date`` objects and
        ``rfv_score`` is the concatenated score string (e.g. "545").

    Example:
        >>> from customer_rfv.pipeline import run_segmentation
        >>> grid = [
        ...     ["Cliente", "Data", "Valor"],
        ...     ["Ana", "01/05/2024", "150,00"],
        ...     ["Bia", "10/01/2024", "80,00"],
        ... ]
        >>> run = run_segmentation(grid, now=datetime(2024, 6, 1))
        >>> df = records_to_dataframe(run.records)
        >>> sorted(df["name"]), float(df["total_value"].sum())
        (['Ana', 'Bia'], 230.0)
    """
    if not records:
        return pd.DataFrame(columns=RECORD_COLUMNS)

    rows = [
        {
            "customer_key": r.customer_key,
            "name": r.name,
            "phone": r.phone,
            "whatsapp": r.whatsapp,
            "email": r.email,
            "cpf": r.cpf,
            "record_id": r.record_id,
            "first_purchase_date": r.first_purchase_date,
            "last_purchase_date": r.last_purchase_date,
            "total_purchases": r.total_purchases,
            "total_value": money_to_float(r.total_value),
            "average_ticket": money_to_float(r.average_ticket),
            "days_since_last_purchase": r.days_since_last_purchase,
            "recency_score": r.recency_score,
            "frequency_score": r.frequency_score,
            "value_score": r.value_score,
            "rfv_score": f"{r.recency_score}{r.frequency_score}{r.value_score}",
            "segment": r.segment.value,
        }
        for r in records
    ]
    return pd.DataFrame(rows, columns=RECORD_COLUMNS)


def dataframe_to_records(records_df: pd.DataFrame) -> List[CustomerRFVRecord]:
    """Convert a DataFrame produced by :func:`records_to_dataframe` back to records.

    Args:
        records_df: DataFrame with the record columns (``rfv_score`` optional)

    Returns:
        List of validated CustomerRFVRecord objects, in row order

    Raises:
        ValueError: If DataFrame is missing required columns, has null values
            in required columns, or holds invalid data
    """
    missing_cols = set(_REQUIRED_RECORD_COLUMNS) - set(records_df.columns)
    if missing_cols:
        raise ValueError(f"DataFrame missing required columns: {missing_cols}")

    if records_df.empty:
        return []

    required = [c for c in _REQUIRED_RECORD_COLUMNS if c not in _OPTIONAL_TEXT_COLUMNS]
    null_cols = records_df[required].isnull().any()
    if null_cols.any():
        null_col_names = null_cols[null_cols].index.tolist()
        raise ValueError(f"Null/NaN values found in columns: {null_col_names}.")

    records = []
    for row in records_df.to_dict("records"):
        records.append(
            CustomerRFVRecord(
                customer_key=str(row["customer_key"]),
                name=str(row["name"]),
                phone=text_or_none(row["phone"]),
                whatsapp=text_or_none(row["whatsapp"]),
                email=text_or_none(row["email"]),
                cpf=text_or_none(row["cpf"]),
                record_id=text_or_none(row["record_id"]),
                first_purchase_date=pd.to_datetime(row["first_purchase_date"]).date(),
                last_purchase_date=pd.to_datetime(row["last_purchase_date"]).date(),
                total_purchases=int(row["total_purchases"]),
                total_value=float_to_money(float(row["total_value"])),
                average_ticket=float_to_money(float(row["average_ticket"])),
                days_since_last_purchase=int(row["days_since_last_purchase"]),
                recency_score=int(row["recency_score"]),
                frequency_score=int(row["frequency_score"]),
                value_score=int(row["value_score"]),
                segment=Segment(row["segment"]),
            )
        )
    return records


def aggregates_to_dataframe(aggregates: Sequence[CustomerAggregate]) -> pd.DataFrame:
    """Flatten aggregates into one row per aggregated source purchase.

    Args:
        aggregates: Aggregates from
            :func:`customer_rfv.foundation.aggregation.aggregate_customers`

    Returns:
        DataFrame with columns customer_key, purchase_date, amount, sorted by
        customer_key then purchase_date
    """
    columns = ["customer_key", "purchase_date", "amount"]
    rows = [
        {"customer_key": a.customer_key, "purchase_date": d, "amount": money_to_float(v)}
        for a in aggregates
        for d, v in zip(a.purchase_dates, a.amounts)
    ]
    if not rows:
        return pd.DataFrame(columns=columns)

    df = pd.DataFrame(rows, columns=columns)
    return df.sort_values(["customer_key", "purchase_date"], kind="stable").reset_index(drop=True)


def segment_dataframe(
    df: pd.DataFrame,
    mapping: Optional[ColumnMapping] = None,
    now: Optional[datetime] = None,
) -> pd.DataFrame:
    """Run the segmentation pipeline on a DataFrame with a header.

    The DataFrame columns are used as the header row; missing values are
    treated as empty cells. Nothing is persisted.

    Args:
        df: Source data, e.g. from ``pd.read_excel(path)``
        mapping: Optional column mapping (auto-detected when omitted)
        now: Processing reference time (defaults to the current time)

    Returns:
        Records DataFrame as produced by :func:`records_to_dataframe`

    Example:
        >>> df = pd.DataFrame({"Cliente": ["Ana"], "Data": ["01/05/2024"], "Valor": ["10,00"]})
        >>> segment_dataframe(df, now=datetime(2024, 6, 1))["segment"].tolist()
        ['Potential']
    """
    from customer_rfv.pipeline import run_segmentation

    header = [str(column) for column in df.columns]
    body = df.astype(object).where(df.notna(), None).values.tolist()
    run = run_segmentation([header, *body], mapping=mapping, now=now)
    return records_to_dataframe(run.records)

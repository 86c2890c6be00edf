"""Pandas DataFrame adapters for RFV segmentation components."""

from .records import (
    records_to_dataframe,
    dataframe_to_records,
    aggregates_to_dataframe,
    segment_dataframe,
)

__all__ = [
    "records_to_dataframe",
    "dataframe_to_records",
    "aggregates_to_dataframe",
    "segment_dataframe",
]

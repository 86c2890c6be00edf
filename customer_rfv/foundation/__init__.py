"""Foundational building blocks of the RFV segmentation engine.

This package exposes value normalisation, header discovery and column
mapping, per-customer aggregation, RFV (Recency-Frequency-Value) scoring,
segment classification and the final customer record.
"""

from .aggregation import (
    AggregationResult,
    CustomerAggregate,
    aggregate_customers,
    normalize_customer_key,
)
from .columns import (
    ColumnMapping,
    detect_column_mapping,
    locate_header_row,
    split_grid,
)
from .normalization import ParsedAmount, ParsedDate, parse_amount, parse_date
from .records import (
    CustomerRFVRecord,
    build_rfv_records,
    count_by_segment,
    display_name,
    sort_for_display,
)
from .rfv import (
    RFVMetrics,
    RFVScore,
    calculate_rfv_metrics,
    calculate_rfv_scores,
    quintile_scores,
)
from .segments import Segment, classify_segment, match_segment_label, resolve_segment

__all__ = [
    "AggregationResult",
    "CustomerAggregate",
    "aggregate_customers",
    "normalize_customer_key",
    "ColumnMapping",
    "detect_column_mapping",
    "locate_header_row",
    "split_grid",
    "ParsedAmount",
    "ParsedDate",
    "parse_amount",
    "parse_date",
    "CustomerRFVRecord",
    "build_rfv_records",
    "count_by_segment",
    "display_name",
    "sort_for_display",
    "RFVMetrics",
    "RFVScore",
    "calculate_rfv_metrics",
    "calculate_rfv_scores",
    "quintile_scores",
    "Segment",
    "classify_segment",
    "match_segment_label",
    "resolve_segment",
]

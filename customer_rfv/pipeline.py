"""End-to-end RFV segmentation of one uploaded grid.

Stages run strictly in order; the scorer needs the complete aggregate
population before it can rank any single customer:

1. locate the header row and split the grid into label-keyed rows
2. detect (or accept) the column mapping and validate it
3. aggregate rows per customer
4. derive metrics and quintile scores, apply overrides
5. classify segments and build the records
6. optionally persist the records and log the upload

Apart from the optional store, the run is a pure function of
(grid, mapping, now).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Sequence

import structlog
from opentelemetry import metrics, trace

from customer_rfv.foundation.aggregation import AggregationResult, aggregate_customers
from customer_rfv.foundation.columns import (
    ColumnMapping,
    detect_column_mapping,
    locate_header_row,
    split_grid,
)
from customer_rfv.foundation.records import (
    CustomerRFVRecord,
    build_rfv_records,
    count_by_segment,
    sort_for_display,
)
from customer_rfv.foundation.rfv import calculate_rfv_metrics, calculate_rfv_scores
from customer_rfv.persistence.gateway import PersistResult, RFVCustomerStore

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)
meter = metrics.get_meter(__name__)

rows_counter = meter.create_counter(
    "rfv.rows_processed", unit="1", description="Data rows consumed by segmentation runs"
)
customers_counter = meter.create_counter(
    "rfv.customers_scored", unit="1", description="Customer records produced by segmentation runs"
)
failed_records_counter = meter.create_counter(
    "rfv.records_failed", unit="1", description="Records lost to failed storage batches"
)


@dataclass(frozen=True)
class SegmentationRun:
    """Result of :func:`run_segmentation`.

    Attributes
    ----------
    header_row:
        0-based index of the grid row used as header
    labels:
        Column labels derived from the header row
    mapping:
        Column mapping actually used
    aggregation:
        Aggregates and row counters
    records:
        Output records ordered by segment priority, total value (descending),
        then customer key
    now:
        Processing reference time
    persist:
        Storage outcome, or None when no store was given
    """

    header_row: int
    labels: tuple[str, ...]
    mapping: ColumnMapping
    aggregation: AggregationResult
    records: tuple[CustomerRFVRecord, ...]
    now: datetime
    persist: Optional[PersistResult] = None

    def segment_breakdown(self) -> dict[str, int]:
        return count_by_segment(self.records)

    def counters(self) -> dict[str, Any]:
        """Per-run counters for display; batch counts only when persisted."""
        counters: dict[str, Any] = dict(self.aggregation.counters())
        if self.persist is not None:
            counters["records_saved"] = self.persist.succeeded
            counters["records_failed"] = self.persist.failed
            counters["failed_batches"] = len(self.persist.failures)
            counters["upload_logged"] = self.persist.log_error is None
        return counters

    def summary(self) -> dict[str, Any]:
        return {
            "header_row": self.header_row,
            "mapping": self.mapping.mapped(),
            "reference_date": self.now.date().isoformat(),
            "counters": self.counters(),
            "segment_breakdown": self.segment_breakdown(),
        }


def run_segmentation(
    grid: Sequence[Sequence[Any]],
    mapping: Optional[ColumnMapping] = None,
    now: Optional[datetime] = None,
    store: Optional[RFVCustomerStore] = None,
    uploaded_by: str = "system",
    uploaded_by_name: Optional[str] = None,
    file_name: Optional[str] = None,
) -> SegmentationRun:
    """Segment the customers of a raw spreadsheet grid.

    Parameters
    ----------
    grid:
        Raw rows of cells, e.g. from :func:`customer_rfv.loaders.load_grid`
    mapping:
        Column mapping to use; auto-detected from the header labels when
        omitted. Apply manual corrections with
        :meth:`ColumnMapping.with_overrides` before passing it in.
    now:
        Processing reference time (defaults to the current time). Two runs
        over the same grid with the same ``now`` produce identical records.
    store:
        When given, records are upserted and an upload log entry is written
    uploaded_by, uploaded_by_name, file_name:
        Upload log metadata

    Raises
    ------
    MappingIncompleteError
        Required fields are unmapped; raised before any row is read.
    UnknownColumnError
        The mapping references labels absent from the header row.

    Examples
    --------
    >>> from datetime import datetime
    >>> grid = [
    ...     ["Relatório de vendas", None, None],
    ...     ["Cliente", "Data", "Valor"],
    ...     ["Maria Silva", "01/05/2024", "150,00"],
    ...     ["MARIA SILVA", "20/05/2024", "50,00"],
    ...     ["João Souza", "10/01/2024", "80,00"],
    ... ]
    >>> run = run_segmentation(grid, now=datetime(2024, 6, 1))
    >>> run.header_row, run.aggregation.unique_customers
    (1, 2)
    >>> [(r.name, r.total_purchases) for r in run.records]
    [('Maria Silva', 2), ('João Souza', 1)]
    """
    now = now or datetime.now()

    with tracer.start_as_current_span("rfv.split_grid") as span:
        header_row = locate_header_row(grid)
        labels, rows = split_grid(grid, header_index=header_row)
        span.set_attribute("rfv.header_row", header_row)
        span.set_attribute("rfv.data_rows", len(rows))

    with tracer.start_as_current_span("rfv.column_mapping") as span:
        if mapping is None:
            mapping = detect_column_mapping(labels)
            span.set_attribute("rfv.mapping_detected", True)
        mapping.validate_for(labels)

    with tracer.start_as_current_span("rfv.aggregate") as span:
        aggregation = aggregate_customers(rows, mapping, now)
        span.set_attribute("rfv.unique_customers", aggregation.unique_customers)

    with tracer.start_as_current_span("rfv.score"):
        rfv_metrics = calculate_rfv_metrics(aggregation.aggregates, now)
        rfv_scores = calculate_rfv_scores(rfv_metrics)

    with tracer.start_as_current_span("rfv.classify"):
        records = sort_for_display(build_rfv_records(aggregation.aggregates, rfv_metrics, rfv_scores))

    rows_counter.add(aggregation.total_rows)
    customers_counter.add(len(records))

    persist = None
    if store is not None:
        with tracer.start_as_current_span("rfv.persist") as span:
            persist = store.persist_run(
                records,
                uploaded_by=uploaded_by,
                uploaded_by_name=uploaded_by_name,
                file_name=file_name,
                data_reference_date=now.date(),
            )
            span.set_attribute("rfv.records_failed", persist.failed)
        failed_records_counter.add(persist.failed)

    run = SegmentationRun(
        header_row=header_row,
        labels=tuple(labels),
        mapping=mapping,
        aggregation=aggregation,
        records=tuple(records),
        now=now,
        persist=persist,
    )
    logger.info(
        "segmentation_completed",
        file_name=file_name,
        **run.counters(),
        segments=run.segment_breakdown(),
    )
    return run

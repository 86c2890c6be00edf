"""Segment summaries and exports of segmentation runs.

This module turns a :class:`~customer_rfv.pipeline.SegmentationRun` into the
per-segment overview shown on the RFV dashboard and saves runs as JSON,
Markdown or CSV for audit trails and stakeholder communication.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Any, Iterable, Sequence

from customer_rfv.foundation.records import CustomerRFVRecord
from customer_rfv.foundation.segments import Segment
from customer_rfv.pandas.records import records_to_dataframe
from customer_rfv.pipeline import SegmentationRun

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
TENTHS = Decimal("0.1")


@dataclass(frozen=True)
class SegmentSummary:
    """Aggregate figures of one segment.

    Attributes
    ----------
    segment:
        The segment
    customers:
        Number of customers in the segment
    revenue:
        Sum of ``total_value`` over the segment
    average_ticket:
        revenue / customers (0 for an empty segment)
    share_pct:
        Percentage of all customers, one decimal place
    """

    segment: Segment
    customers: int
    revenue: Decimal
    average_ticket: Decimal
    share_pct: Decimal

    def as_dict(self) -> dict[str, Any]:
        return {
            "segment": self.segment.value,
            "priority": self.segment.priority,
            "criteria": self.segment.criteria,
            "customers": self.customers,
            "revenue": float(self.revenue),
            "average_ticket": float(self.average_ticket),
            "share_pct": float(self.share_pct),
        }


def summarize_segments(records: Sequence[CustomerRFVRecord]) -> list[SegmentSummary]:
    """Summarise records per segment, every segment included, priority order.

    Examples
    --------
    >>> [s.customers for s in summarize_segments([])]
    [0, 0, 0, 0, 0, 0]
    """
    total = len(records)
    summaries = []
    for segment in Segment:
        members = [r for r in records if r.segment is segment]
        revenue = sum((r.total_value for r in members), Decimal("0")).quantize(CENTS)
        count = len(members)
        average_ticket = (revenue / count).quantize(CENTS, rounding=ROUND_HALF_UP) if count else Decimal("0.00")
        share = (Decimal(100 * count) / total).quantize(TENTHS, rounding=ROUND_HALF_UP) if total else Decimal("0.0")
        summaries.append(
            SegmentSummary(
                segment=segment,
                customers=count,
                revenue=revenue,
                average_ticket=average_ticket,
                share_pct=share,
            )
        )
    return summaries


def contact_gaps(records: Iterable[CustomerRFVRecord]) -> dict[str, int]:
    """Count records lacking a phone, an email or a CPF."""
    gaps = {"missing_phone": 0, "missing_email": 0, "missing_cpf": 0}
    for record in records:
        if not record.phone:
            gaps["missing_phone"] += 1
        if not record.email:
            gaps["missing_email"] += 1
        if not record.cpf:
            gaps["missing_cpf"] += 1
    return gaps


def build_run_report(run: SegmentationRun, metadata: dict[str, Any] | None = None) -> dict[str, Any]:
    """Assemble the JSON-serialisable report of a run."""
    report = {
        "metadata": metadata or {},
        "timestamp": datetime.now().isoformat(),
        **run.summary(),
        "segments": [summary.as_dict() for summary in summarize_segments(run.records)],
        "contact_gaps": contact_gaps(run.records),
    }
    if run.persist is not None:
        report["persistence"] = run.persist.as_dict()
    return report


def export_run_report_json(
    run: SegmentationRun,
    output_path: str | Path,
    metadata: dict[str, Any] | None = None,
) -> None:
    """Export a run report to JSON format.

    Parameters
    ----------
    run:
        Result of :func:`customer_rfv.pipeline.run_segmentation`
    output_path:
        Path where JSON file will be saved
    metadata:
        Optional metadata to include in report (e.g., source file, uploader)

    Examples
    --------
    >>> from customer_rfv.loaders import load_grid
    >>> from customer_rfv.pipeline import run_segmentation
    >>> run = run_segmentation(load_grid("vendas.xlsx"))  # doctest: +SKIP
    >>> export_run_report_json(run, "rfv_report.json", metadata={"file_name": "vendas.xlsx"})  # doctest: +SKIP
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(build_run_report(run, metadata), f, indent=2, ensure_ascii=False)

    logger.info(f"RFV run report exported to {output_path}")


def export_records_csv(records: Sequence[CustomerRFVRecord], output_path: str | Path) -> None:
    """Export records to CSV, one row per customer, in the given order.

    Parameters
    ----------
    records:
        Records to export (e.g. ``run.records``)
    output_path:
        Path where CSV file will be saved
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    df = records_to_dataframe(records)
    df.to_csv(output_path, index=False)

    logger.info(f"{len(records)} RFV records exported to {output_path}")


def export_run_report_markdown(
    run: SegmentationRun,
    output_path: str | Path,
    title: str = "RFV Segmentation Report",
    metadata: dict[str, Any] | None = None,
) -> None:
    """Export a run report to Markdown format.

    Parameters
    ----------
    run:
        Result of :func:`customer_rfv.pipeline.run_segmentation`
    output_path:
        Path where Markdown file will be saved
    title:
        Report title (default: "RFV Segmentation Report")
    metadata:
        Optional metadata to include in report header
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    lines = []
    lines.append(f"# {title}\n")
    lines.append(f"**Generated:** {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    lines.append(f"**Reference date:** {run.now.date().isoformat()}\n")

    if metadata:
        lines.append("## Metadata\n")
        for key, value in metadata.items():
            lines.append(f"- **{key}:** {value}")
        lines.append("")

    lines.append("## Input\n")
    counters = run.counters()
    lines.append(f"- **Header row:** {run.header_row + 1}")
    lines.append(f"- **Rows read:** {counters['total_rows']}")
    lines.append(f"- **Rows without name (dropped):** {counters['skipped_no_name']}")
    lines.append(f"- **Rows without valid date:** {counters['skipped_no_date']}")
    lines.append(f"- **Rows with zero amount:** {counters['skipped_zero_amount']}")
    lines.append(f"- **Customers:** {counters['unique_customers']}\n")

    lines.append("## Column Mapping\n")
    lines.append("| Field | Column |")
    lines.append("|-------|--------|")
    for field, label in run.mapping.mapped().items():
        lines.append(f"| {field} | {label} |")
    lines.append("")

    lines.append("## Segments\n")
    lines.append("| Segment | Criteria | Customers | Share | Revenue | Avg. Ticket |")
    lines.append("|---------|----------|-----------|-------|---------|-------------|")
    for summary in summarize_segments(run.records):
        lines.append(
            f"| {summary.segment.value} | {summary.segment.criteria} | {summary.customers} "
            f"| {summary.share_pct}% | {summary.revenue:,.2f} | {summary.average_ticket:,.2f} |"
        )
    lines.append("")

    gaps = contact_gaps(run.records)
    lines.append("## Contact Data\n")
    lines.append(f"- **Without phone:** {gaps['missing_phone']}")
    lines.append(f"- **Without email:** {gaps['missing_email']}")
    lines.append(f"- **Without CPF:** {gaps['missing_cpf']}\n")

    if run.persist is not None:
        lines.append("## Storage\n")
        lines.append(f"- **Records saved:** {run.persist.succeeded}")
        lines.append(f"- **Records failed:** {run.persist.failed}")
        for failure in run.persist.failures:
            lines.append(f"  - batch {failure.batch_index} ({failure.size} records): {failure.error}")
        if run.persist.log_error:
            lines.append(f"- **Upload log failed:** {run.persist.log_error}")
        lines.append("")

    with open(output_path, "w", encoding="utf-8") as f:
        f.write("\n".join(lines))

    logger.info(f"RFV run report exported to {output_path}")

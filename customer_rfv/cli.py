"""Command line entry points for the RFV segmentation engine."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from customer_rfv.config import Settings
from customer_rfv.errors import InputFileError, MappingIncompleteError, RFVError, UnknownColumnError
from customer_rfv.foundation.columns import (
    detect_column_mapping,
    locate_header_row,
    split_grid,
)
from customer_rfv.foundation.segments import Segment
from customer_rfv.loaders import load_grid
from customer_rfv.observability import configure_logging, configure_observability
from customer_rfv.persistence import CustomerQuery, RFVCustomerStore
from customer_rfv.pipeline import run_segmentation
from customer_rfv.reporting import (
    export_records_csv,
    export_run_report_json,
    export_run_report_markdown,
)

logger = logging.getLogger(__name__)


def _setup(settings: Settings, verbose: bool = False) -> None:
    configure_logging("DEBUG" if verbose else settings.log_level, json_output=settings.log_json)
    if settings.trace:
        configure_observability()


def _dump(payload: Any) -> None:
    json.dump(payload, fp=sys.stdout, indent=2, ensure_ascii=False, default=str)
    print()


def _parse_overrides(pairs: list[str] | None) -> dict[str, str]:
    overrides: dict[str, str] = {}
    for pair in pairs or []:
        field, sep, label = pair.partition("=")
        if not sep or not field.strip():
            raise ValueError(f"Expected FIELD=LABEL for --map, got {pair!r}")
        overrides[field.strip()] = label.strip()
    return overrides


def _sheet(value: str) -> int | str:
    return int(value) if value.isdigit() else value


def _parse_now(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def detect_columns_cli(argv: list[str] | None = None) -> int:
    """Show the detected header row and column mapping of a spreadsheet."""

    parser = argparse.ArgumentParser(description=detect_columns_cli.__doc__)
    parser.add_argument("input", type=Path, help="Spreadsheet (.xlsx, .xls) or delimited text file")
    parser.add_argument("--sheet", default="0", help="Worksheet index or name (default: first sheet)")
    args = parser.parse_args(argv)

    settings = Settings.from_env()
    _setup(settings)

    try:
        grid = load_grid(args.input, sheet_name=_sheet(args.sheet))
    except InputFileError as exc:
        logger.error(str(exc))
        return 1

    header_row = locate_header_row(grid)
    labels, _ = split_grid(grid, header_index=header_row)
    mapping = detect_column_mapping(labels)
    _dump(
        {
            "header_row": header_row,
            "labels": labels,
            "mapping": mapping.mapped(),
            "missing": mapping.missing_requirements(),
        }
    )
    return 0


def segment_cli(argv: list[str] | None = None) -> int:
    """Segment the customers of a spreadsheet export by RFV scores.

    Exit codes: 0 on success, 1 when the input is unreadable, the store cannot
    be opened or part of the run was not saved, 2 when the column mapping is
    incomplete or invalid.
    """
    parser = argparse.ArgumentParser(description="Segment customers of a spreadsheet by RFV scores")
    parser.add_argument("input", type=Path, help="Spreadsheet (.xlsx, .xls) or delimited text file")
    parser.add_argument("--sheet", default="0", help="Worksheet index or name (default: first sheet)")
    parser.add_argument(
        "--map",
        dest="overrides",
        action="append",
        metavar="FIELD=LABEL",
        help="Correct the detected mapping, e.g. --map customer_name=Paciente (repeatable). "
        "An empty LABEL unmaps the field.",
    )
    parser.add_argument(
        "--now",
        help="Reference time as ISO date/datetime (default: current time)",
    )
    parser.add_argument("--database-url", help="SQLAlchemy URL of the customer store (overrides RFV_DATABASE_URL)")
    parser.add_argument("--uploaded-by", help="Uploader identity for the upload log (overrides RFV_UPLOADED_BY)")
    parser.add_argument("--uploaded-by-name", help="Uploader display name for the upload log")
    parser.add_argument("--batch-size", type=int, help="Records per storage transaction (overrides RFV_BATCH_SIZE)")
    parser.add_argument("--output-csv", type=Path, help="Write the customer records to this CSV file")
    parser.add_argument(
        "--report",
        type=Path,
        help="Write a run report; .md produces Markdown, anything else JSON",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args(argv)

    settings = Settings.from_env()
    _setup(settings, args.verbose)

    try:
        overrides = _parse_overrides(args.overrides)
        now = _parse_now(args.now)
    except ValueError as exc:
        parser.error(str(exc))

    logger.info(f"Loading grid from {args.input}")
    try:
        grid = load_grid(args.input, sheet_name=_sheet(args.sheet))
    except InputFileError as exc:
        logger.error(str(exc))
        return 1

    mapping = None
    if overrides:
        labels, _ = split_grid(grid)
        try:
            mapping = detect_column_mapping(labels).with_overrides(**overrides)
        except ValueError as exc:
            logger.error(str(exc))
            return 2

    database_url = args.database_url or settings.database_url
    store = None
    if database_url:
        try:
            store = RFVCustomerStore(database_url, batch_size=args.batch_size or settings.batch_size)
            store.create_schema()
        except (RFVError, SQLAlchemyError) as exc:
            logger.error(f"Cannot open customer store: {exc}")
            return 1

    try:
        run = run_segmentation(
            grid,
            mapping=mapping,
            now=now,
            store=store,
            uploaded_by=args.uploaded_by or settings.uploaded_by,
            uploaded_by_name=args.uploaded_by_name,
            file_name=args.input.name,
        )
    except (MappingIncompleteError, UnknownColumnError) as exc:
        logger.error(str(exc))
        return 2

    if args.output_csv:
        export_records_csv(run.records, args.output_csv)
    if args.report:
        metadata = {"file_name": args.input.name}
        if args.report.suffix.lower() == ".md":
            export_run_report_markdown(run, args.report, metadata=metadata)
        else:
            export_run_report_json(run, args.report, metadata=metadata)

    _dump(run.summary())

    if run.persist is not None and not run.persist.ok:
        if run.persist.failed:
            logger.error(
                f"{run.persist.failed} records in {len(run.persist.failures)} batches were not saved; "
                "re-run the upload to retry"
            )
        if run.persist.log_error:
            logger.error(f"Records were saved but the upload was not logged: {run.persist.log_error}")
        return 1
    return 0


def query_cli(argv: list[str] | None = None) -> int:
    """List stored customer records matching the given filters."""

    parser = argparse.ArgumentParser(description=query_cli.__doc__)
    parser.add_argument("--database-url", help="SQLAlchemy URL of the customer store (overrides RFV_DATABASE_URL)")
    parser.add_argument("--segment", choices=[segment.value for segment in Segment])
    parser.add_argument("--min-value", type=Decimal)
    parser.add_argument("--max-value", type=Decimal)
    parser.add_argument("--min-days", type=int, help="Minimum days since last purchase")
    parser.add_argument("--max-days", type=int, help="Maximum days since last purchase")
    parser.add_argument("--purchased-from", type=date.fromisoformat, help="Last purchase on or after (YYYY-MM-DD)")
    parser.add_argument("--purchased-to", type=date.fromisoformat, help="Last purchase on or before (YYYY-MM-DD)")
    parser.add_argument("--search", help="Substring of name, phone or email")
    parser.add_argument(
        "--sort-by",
        default="total_value",
        choices=["total_value", "average_ticket", "total_purchases", "days_since_last_purchase", "name"],
    )
    parser.add_argument("--ascending", action="store_true", help="Sort ascending (default: descending)")
    parser.add_argument("--limit", type=int)
    args = parser.parse_args(argv)

    settings = Settings.from_env()
    _setup(settings)

    database_url = args.database_url or settings.database_url
    if not database_url:
        parser.error("a database URL is required (--database-url or RFV_DATABASE_URL)")

    try:
        query = CustomerQuery(
            segment=Segment(args.segment) if args.segment else None,
            min_value=args.min_value,
            max_value=args.max_value,
            min_days=args.min_days,
            max_days=args.max_days,
            purchased_from=args.purchased_from,
            purchased_to=args.purchased_to,
            search=args.search,
            sort_by=args.sort_by,
            descending=not args.ascending,
            limit=args.limit,
        )
    except ValidationError as exc:
        parser.error(str(exc))

    store = RFVCustomerStore(database_url)
    records = store.query_customers(query)
    _dump([record.as_dict() for record in records])
    return 0


def main() -> None:
    commands = {
        "detect-columns": detect_columns_cli,
        "segment": segment_cli,
        "query": query_cli,
    }
    if len(sys.argv) < 2 or sys.argv[1] not in commands:
        print(f"usage: {Path(sys.argv[0]).name} {{{','.join(commands)}}} ...", file=sys.stderr)
        raise SystemExit(2)
    raise SystemExit(commands[sys.argv[1]](sys.argv[2:]))


if __name__ == "__main__":  # pragma: no cover
    main()

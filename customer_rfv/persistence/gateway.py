"""Batched, failure-tolerant storage of RFV customer records.

Records are upserted by ``customer_key`` in fixed-size batches, each batch in
its own transaction. A batch that fails is rolled back, logged and counted;
the remaining batches are still written. Nothing is retried here: upserts are
idempotent per key, so callers can simply re-run a run that reported
failures.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from typing import Any, Iterator, Mapping, Optional, Sequence, Union

import structlog
from sqlalchemy import create_engine, delete, insert, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from customer_rfv.errors import RFVError
from customer_rfv.foundation.aggregation import normalize_customer_key
from customer_rfv.foundation.records import CustomerRFVRecord, count_by_segment
from customer_rfv.persistence.queries import CustomerQuery, build_customer_select
from customer_rfv.persistence.schema import (
    RECORD_COLUMNS,
    metadata,
    rfv_customers,
    rfv_upload_logs,
)

logger = structlog.get_logger(__name__)

DEFAULT_BATCH_SIZE = 100

# Dialects with INSERT ... ON CONFLICT DO UPDATE
UPSERT_DIALECTS = ("postgresql", "sqlite")


@dataclass(frozen=True)
class BatchFailure:
    """One batch that could not be written.

    Attributes
    ----------
    batch_index:
        0-based position of the batch in the run
    size:
        Number of records in the batch (none of them committed)
    error:
        Storage error message
    """

    batch_index: int
    size: int
    error: str


@dataclass(frozen=True)
class PersistResult:
    """Outcome of an upsert run, reported back to the operator.

    ``log_error`` is set when the records were written but the upload log
    entry could not be.
    """

    succeeded: int
    failed: int
    batches: int
    failures: tuple[BatchFailure, ...] = field(default_factory=tuple)
    log_error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.failed == 0 and self.log_error is None

    def as_dict(self) -> dict[str, Any]:
        return {
            "succeeded": self.succeeded,
            "failed": self.failed,
            "batches": self.batches,
            "failures": [
                {"batch_index": f.batch_index, "size": f.size, "error": f.error}
                for f in self.failures
            ],
            "log_error": self.log_error,
        }


@dataclass(frozen=True)
class UploadLogEntry:
    """One row of the append-only upload log."""

    id: int
    uploaded_by: str
    uploaded_by_name: Optional[str]
    file_name: Optional[str]
    total_customers: int
    segment_breakdown: dict[str, int]
    data_reference_date: Optional[date]
    notes: Optional[str]
    uploaded_at: datetime


def _batches(records: Sequence[CustomerRFVRecord], size: int) -> Iterator[Sequence[CustomerRFVRecord]]:
    for start in range(0, len(records), size):
        yield records[start : start + size]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RFVCustomerStore:
    """SQLAlchemy-backed store for customer records and upload logs.

    Parameters
    ----------
    engine_or_url:
        An :class:`~sqlalchemy.engine.Engine` or a database URL. Upserts need
        ``INSERT ... ON CONFLICT``, available on SQLite and PostgreSQL.
    batch_size:
        Number of records written per transaction (default 100)

    Raises
    ------
    RFVError
        The engine's dialect has no upsert support.

    Examples
    --------
    >>> store = RFVCustomerStore("sqlite://")
    >>> store.create_schema()
    >>> store.upsert_records([]).batches
    0
    """

    def __init__(
        self,
        engine_or_url: Union[Engine, str],
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        if isinstance(engine_or_url, str):
            engine_or_url = create_engine(engine_or_url)
        dialect = engine_or_url.dialect.name
        if dialect not in UPSERT_DIALECTS:
            raise RFVError(f"Upsert not supported for database dialect {dialect!r}")
        self.engine: Engine = engine_or_url
        self.batch_size = batch_size

    def create_schema(self) -> None:
        """Create the tables if they do not exist."""
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _upsert_statement(self) -> Any:
        if self.engine.dialect.name == "postgresql":
            from sqlalchemy.dialects.postgresql import insert as dialect_insert
        else:
            from sqlalchemy.dialects.sqlite import insert as dialect_insert

        statement = dialect_insert(rfv_customers)
        updated = {name: statement.excluded[name] for name in RECORD_COLUMNS if name != "customer_key"}
        updated["created_by"] = statement.excluded.created_by
        updated["updated_at"] = statement.excluded.updated_at
        return statement.on_conflict_do_update(
            index_elements=[rfv_customers.c.customer_key],
            set_=updated,
        )

    def _write_batch(self, connection: Connection, rows: list[dict[str, Any]], batch_index: int) -> None:
        connection.execute(self._upsert_statement(), rows)

    def upsert_records(
        self,
        records: Sequence[CustomerRFVRecord],
        created_by: Optional[str] = None,
    ) -> PersistResult:
        """Insert or replace records by ``customer_key`` in batches.

        A batch raising :class:`~sqlalchemy.exc.SQLAlchemyError` is rolled
        back and reported in :attr:`PersistResult.failures`; later batches
        are still attempted.
        """
        timestamp = _utcnow()
        succeeded = 0
        failed = 0
        batches = 0
        failures: list[BatchFailure] = []

        for batch_index, batch in enumerate(_batches(records, self.batch_size)):
            batches += 1
            rows = [
                {
                    **record.to_row(),
                    "created_by": created_by,
                    "created_at": timestamp,
                    "updated_at": timestamp,
                }
                for record in batch
            ]
            try:
                with self.engine.begin() as connection:
                    self._write_batch(connection, rows, batch_index)
            except SQLAlchemyError as exc:
                failed += len(rows)
                failures.append(BatchFailure(batch_index=batch_index, size=len(rows), error=str(exc)))
                logger.error(
                    "batch_upsert_failed",
                    batch_index=batch_index,
                    size=len(rows),
                    error=str(exc),
                )
                continue
            succeeded += len(rows)
            logger.debug("batch_upserted", batch_index=batch_index, size=len(rows))

        result = PersistResult(
            succeeded=succeeded,
            failed=failed,
            batches=batches,
            failures=tuple(failures),
        )
        logger.info("records_upserted", succeeded=succeeded, failed=failed, batches=batches)
        return result

    def record_upload(
        self,
        total_customers: int,
        segment_breakdown: Mapping[str, int],
        uploaded_by: str,
        uploaded_by_name: Optional[str] = None,
        file_name: Optional[str] = None,
        data_reference_date: Optional[date] = None,
        notes: Optional[str] = None,
    ) -> int:
        """Append an upload log entry and return its id."""
        with self.engine.begin() as connection:
            result = connection.execute(
                insert(rfv_upload_logs).values(
                    uploaded_by=uploaded_by,
                    uploaded_by_name=uploaded_by_name,
                    file_name=file_name,
                    total_customers=total_customers,
                    segment_breakdown=dict(segment_breakdown),
                    data_reference_date=data_reference_date,
                    notes=notes,
                    uploaded_at=_utcnow(),
                )
            )
            upload_id = result.inserted_primary_key[0]
        logger.info(
            "upload_logged",
            upload_id=upload_id,
            uploaded_by=uploaded_by,
            file_name=file_name,
            total_customers=total_customers,
        )
        return upload_id

    def persist_run(
        self,
        records: Sequence[CustomerRFVRecord],
        uploaded_by: str,
        uploaded_by_name: Optional[str] = None,
        file_name: Optional[str] = None,
        data_reference_date: Optional[date] = None,
    ) -> PersistResult:
        """Upsert a run's records, then log the upload.

        The upload log is written even when some batches failed; its notes
        carry the failure count. A storage error while logging does not undo
        the committed batches: it is returned in
        :attr:`PersistResult.log_error`.
        """
        result = self.upsert_records(records, created_by=uploaded_by)
        notes = None
        if result.failed:
            notes = (
                f"{result.failed} of {len(records)} records not saved "
                f"({len(result.failures)} failed batches)"
            )
        try:
            self.record_upload(
                total_customers=len(records),
                segment_breakdown=count_by_segment(records),
                uploaded_by=uploaded_by,
                uploaded_by_name=uploaded_by_name,
                file_name=file_name,
                data_reference_date=data_reference_date,
                notes=notes,
            )
        except SQLAlchemyError as exc:
            logger.error("upload_log_failed", uploaded_by=uploaded_by, file_name=file_name, error=str(exc))
            return replace(result, log_error=str(exc))
        return result

    def delete_customer(self, customer_key: str) -> bool:
        """Remove one customer; True when a row was deleted."""
        key = normalize_customer_key(customer_key)
        with self.engine.begin() as connection:
            result = connection.execute(delete(rfv_customers).where(rfv_customers.c.customer_key == key))
        deleted = result.rowcount > 0
        logger.info("customer_deleted", customer_key=key, deleted=deleted)
        return deleted

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def query_customers(self, query: Optional[CustomerQuery] = None) -> list[CustomerRFVRecord]:
        """Return stored records matching ``query`` (all records by default)."""
        statement = build_customer_select(query or CustomerQuery())
        with self.engine.connect() as connection:
            rows = connection.execute(statement).mappings().all()
        return [CustomerRFVRecord.from_row(row) for row in rows]

    def get_customer(self, customer_key: str) -> Optional[CustomerRFVRecord]:
        key = normalize_customer_key(customer_key)
        with self.engine.connect() as connection:
            row = (
                connection.execute(select(rfv_customers).where(rfv_customers.c.customer_key == key))
                .mappings()
                .first()
            )
        return CustomerRFVRecord.from_row(row) if row is not None else None

    def list_upload_logs(self, limit: Optional[int] = None) -> list[UploadLogEntry]:
        """Upload log entries, most recent first."""
        statement = select(rfv_upload_logs).order_by(rfv_upload_logs.c.id.desc())
        if limit is not None:
            statement = statement.limit(limit)
        with self.engine.connect() as connection:
            rows = connection.execute(statement).mappings().all()
        return [
            UploadLogEntry(
                id=row["id"],
                uploaded_by=row["uploaded_by"],
                uploaded_by_name=row["uploaded_by_name"],
                file_name=row["file_name"],
                total_customers=row["total_customers"],
                segment_breakdown=dict(row["segment_breakdown"]),
                data_reference_date=row["data_reference_date"],
                notes=row["notes"],
                uploaded_at=row["uploaded_at"],
            )
            for row in rows
        ]

"""Tests for the RFV customer store."""

from datetime import date, datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_mock_engine, select
from sqlalchemy.exc import OperationalError

from customer_rfv.errors import RFVError
from customer_rfv.foundation.records import CustomerRFVRecord, display_name
from customer_rfv.foundation.segments import Segment
from customer_rfv.persistence import BatchFailure, PersistResult, RFVCustomerStore, rfv_customers


def make_record(key, segment=Segment.LOYAL, value="100.00", **kwargs):
    defaults = dict(
        customer_key=key,
        name=display_name(key),
        first_purchase_date=date(2024, 1, 1),
        last_purchase_date=date(2024, 5, 1),
        total_purchases=2,
        total_value=Decimal(value),
        average_ticket=Decimal(value) / 2,
        days_since_last_purchase=31,
        recency_score=3,
        frequency_score=3,
        value_score=3,
        segment=segment,
    )
    defaults.update(kwargs)
    return CustomerRFVRecord(**defaults)


class FailingStore(RFVCustomerStore):
    """Store whose second batch always fails."""

    def _write_batch(self, connection, rows, batch_index):
        if batch_index == 1:
            raise OperationalError("INSERT INTO rfv_customers", {}, Exception("database is locked"))
        super()._write_batch(connection, rows, batch_index)


class UnloggedStore(RFVCustomerStore):
    """Store whose upload log table is unavailable."""

    def record_upload(self, *args, **kwargs):
        raise OperationalError("INSERT INTO rfv_upload_logs", {}, Exception("log table locked"))


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'rfv.db'}"


@pytest.fixture
def store(database_url):
    store = RFVCustomerStore(database_url)
    store.create_schema()
    return store


class TestRFVCustomerStore:
    """Test construction and schema creation."""

    def test_invalid_batch_size(self):
        """Batch sizes below one are rejected."""
        with pytest.raises(ValueError, match="batch_size must be positive"):
            RFVCustomerStore("sqlite://", batch_size=0)

    def test_unsupported_dialect(self):
        """Engines without ON CONFLICT upserts are rejected up front."""
        engine = create_mock_engine("mysql://", lambda sql, *multiparams, **params: None)
        with pytest.raises(RFVError, match="dialect 'mysql'"):
            RFVCustomerStore(engine)

    def test_create_schema_is_repeatable(self, store):
        """Creating the schema twice is harmless."""
        store.create_schema()
        assert store.query_customers() == []


class TestUpsertRecords:
    """Test batched upserts."""

    def test_insert(self, store):
        """New records are inserted and read back unchanged."""
        record = make_record("ana", email="ana@example.com", phone="11999990000")
        result = store.upsert_records([record], created_by="user-1")
        assert result == PersistResult(succeeded=1, failed=0, batches=1)
        assert store.get_customer("ana") == record

    def test_update_by_customer_key(self, store):
        """A second upsert replaces the row of the same key."""
        store.upsert_records([make_record("ana", value="100.00")])
        updated = make_record("ana", segment=Segment.CHAMPIONS, value="900.00", recency_score=5)
        store.upsert_records([updated])
        records = store.query_customers()
        assert len(records) == 1
        assert records[0] == updated

    def test_created_at_kept_on_update(self, store, monkeypatch):
        """Updates refresh updated_at and keep created_at."""
        first = datetime(2024, 1, 1, 8, 0)
        second = datetime(2024, 2, 1, 8, 0)
        monkeypatch.setattr("customer_rfv.persistence.gateway._utcnow", lambda: first)
        store.upsert_records([make_record("ana")], created_by="user-1")
        monkeypatch.setattr("customer_rfv.persistence.gateway._utcnow", lambda: second)
        store.upsert_records([make_record("ana")], created_by="user-2")

        with store.engine.connect() as connection:
            row = connection.execute(select(rfv_customers)).mappings().one()
        assert row["created_at"] == first
        assert row["updated_at"] == second
        assert row["created_by"] == "user-2"

    def test_batches(self, database_url):
        """Records are split into batches of the configured size."""
        store = RFVCustomerStore(database_url, batch_size=100)
        store.create_schema()
        records = [make_record(f"cliente {i:03d}") for i in range(250)]
        result = store.upsert_records(records)
        assert result.batches == 3
        assert result.succeeded == 250
        assert result.ok
        assert len(store.query_customers()) == 250

    def test_empty(self, store):
        """No records, no batches."""
        assert store.upsert_records([]) == PersistResult(succeeded=0, failed=0, batches=0)

    def test_failed_batch_does_not_stop_others(self, database_url):
        """A failing batch is reported while the other batches commit."""
        store = FailingStore(database_url, batch_size=2)
        store.create_schema()
        records = [make_record(key) for key in ("ana", "bia", "caio", "duda", "edu")]
        result = store.upsert_records(records)

        assert not result.ok
        assert result.batches == 3
        assert result.succeeded == 3
        assert result.failed == 2
        [failure] = result.failures
        assert failure.batch_index == 1
        assert failure.size == 2
        assert "database is locked" in failure.error
        assert [r.customer_key for r in store.query_customers()] == ["ana", "bia", "edu"]

    def test_as_dict(self):
        """Results serialise with their failures."""
        result = PersistResult(
            succeeded=1, failed=2, batches=2, failures=(BatchFailure(batch_index=1, size=2, error="boom"),)
        )
        assert result.as_dict() == {
            "succeeded": 1,
            "failed": 2,
            "batches": 2,
            "failures": [{"batch_index": 1, "size": 2, "error": "boom"}],
            "log_error": None,
        }


class TestPersistRun:
    """Test upserting a run together with its upload log."""

    def test_upload_logged(self, store):
        """A clean run is logged without notes."""
        records = [make_record("ana", Segment.CHAMPIONS), make_record("bia", Segment.LOST)]
        result = store.persist_run(
            records,
            uploaded_by="user-1",
            uploaded_by_name="Operadora",
            file_name="vendas.csv",
            data_reference_date=date(2024, 6, 1),
        )
        assert result.ok
        [log] = store.list_upload_logs()
        assert log.uploaded_by == "user-1"
        assert log.uploaded_by_name == "Operadora"
        assert log.file_name == "vendas.csv"
        assert log.total_customers == 2
        assert log.segment_breakdown["Champions"] == 1
        assert log.segment_breakdown["Lost"] == 1
        assert log.segment_breakdown["Loyal"] == 0
        assert log.data_reference_date == date(2024, 6, 1)
        assert log.notes is None

    def test_failures_noted_in_log(self, database_url):
        """Failed batches are summarised in the log notes."""
        store = FailingStore(database_url, batch_size=2)
        store.create_schema()
        records = [make_record(key) for key in ("ana", "bia", "caio")]
        result = store.persist_run(records, uploaded_by="user-1")
        assert result.failed == 1
        [log] = store.list_upload_logs()
        assert log.total_customers == 3
        assert log.notes == "1 of 3 records not saved (1 failed batches)"

    def test_upload_log_failure_reported(self, database_url):
        """A failing upload log keeps the saved records and is reported."""
        store = UnloggedStore(database_url, batch_size=2)
        store.create_schema()
        records = [make_record(key) for key in ("ana", "bia", "caio")]
        result = store.persist_run(records, uploaded_by="user-1")

        assert not result.ok
        assert result.succeeded == 3
        assert result.failed == 0
        assert "log table locked" in result.log_error
        assert result.as_dict()["log_error"] == result.log_error
        assert len(store.query_customers()) == 3
        assert store.list_upload_logs() == []

    def test_logs_most_recent_first(self, store):
        """Upload logs are listed newest first and can be limited."""
        for name in ("a.csv", "b.csv", "c.csv"):
            store.persist_run([make_record("ana")], uploaded_by="user-1", file_name=name)
        assert [log.file_name for log in store.list_upload_logs()] == ["c.csv", "b.csv", "a.csv"]
        assert [log.file_name for log in store.list_upload_logs(limit=1)] == ["c.csv"]


class TestReads:
    """Test single-customer reads and deletes."""

    def test_get_customer_normalises_key(self, store):
        """Lookups accept the display name."""
        store.upsert_records([make_record("maria silva")])
        assert store.get_customer("  Maria Silva ").customer_key == "maria silva"
        assert store.get_customer("joão") is None

    def test_delete_customer(self, store):
        """Deleting reports whether a row was removed."""
        store.upsert_records([make_record("ana"), make_record("bia")])
        assert store.delete_customer("Ana") is True
        assert store.delete_customer("ana") is False
        assert [r.customer_key for r in store.query_customers()] == ["bia"]

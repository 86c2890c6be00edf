"""Tests for the end-to-end segmentation run."""

from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from customer_rfv.errors import MappingIncompleteError, UnknownColumnError
from customer_rfv.foundation.columns import ColumnMapping
from customer_rfv.foundation.segments import Segment, classify_segment
from customer_rfv.persistence import CustomerQuery, RFVCustomerStore
from customer_rfv.pipeline import run_segmentation

NOW = datetime(2024, 6, 1, 9, 30)


@pytest.fixture
def sales_grid():
    return [
        ["Relatório de Vendas", None, None, None],
        [None, None, None, None],
        ["Cliente", "Telefone", "Data", "Valor"],
        ["Maria Silva", "11999990000", "01/05/2024", "150,00"],
        ["MARIA SILVA", None, "20/05/2024", "50,00"],
        ["João Souza", "11988880000", "10/01/2024", "80,00"],
        ["Ana Lima", None, "invalid", "30,00"],
        ["Ana Lima", None, "28/05/2024", "20,00"],
        [None, None, None, None],
    ]


@pytest.fixture
def store(tmp_path):
    store = RFVCustomerStore(f"sqlite:///{tmp_path / 'rfv.db'}", batch_size=2)
    store.create_schema()
    return store


class TestRunSegmentation:
    """Test run_segmentation function."""

    def test_header_after_title_rows(self, sales_grid):
        """The header is found below the report title."""
        run = run_segmentation(sales_grid, now=NOW)
        assert run.header_row == 2
        assert run.labels == ("Cliente", "Telefone", "Data", "Valor")
        assert run.mapping.customer_name == "Cliente"
        assert run.mapping.amount == "Valor"

    def test_case_insensitive_customers_merge(self, sales_grid):
        """Names differing only in case aggregate into one customer."""
        run = run_segmentation(sales_grid, now=NOW)
        records = {r.customer_key: r for r in run.records}
        maria = records["maria silva"]
        assert maria.total_purchases == 2
        assert maria.total_value == Decimal("200.00")
        assert maria.name == "Maria Silva"
        assert maria.phone == "11999990000"

    def test_invalid_date_still_aggregated(self, sales_grid):
        """An unparsable date is counted and its amount still contributes."""
        run = run_segmentation(sales_grid, now=NOW)
        ana = next(r for r in run.records if r.customer_key == "ana lima")
        assert run.aggregation.skipped_no_date == 1
        assert ana.total_value == Decimal("50.00")
        assert ana.last_purchase_date == date(2024, 5, 28)
        assert ana.first_purchase_date == date(1970, 1, 1)

    def test_counters(self, sales_grid):
        """Counters describe the rows consumed."""
        run = run_segmentation(sales_grid, now=NOW)
        assert run.counters() == {
            "total_rows": 5,
            "skipped_no_name": 0,
            "skipped_no_date": 1,
            "skipped_zero_amount": 0,
            "unique_customers": 3,
        }

    def test_decimal_notations_agree(self):
        """Brazilian and US thousands notation parse to the same amount."""
        grid = [
            ["Cliente", "Data", "Valor"],
            ["Ana", "01/05/2024", "1.234,56"],
            ["Bia", "01/05/2024", "1,234.56"],
        ]
        run = run_segmentation(grid, now=NOW)
        assert {r.total_value for r in run.records} == {Decimal("1234.56")}

    def test_recency_quintiles(self):
        """The most recent of ten customers scores 5 and the oldest 1."""
        grid = [["Cliente", "Data", "Valor"]]
        for days in range(1, 11):
            grid.append([f"Cliente {days:02d}", NOW.date() - timedelta(days=days), 100])
        run = run_segmentation(grid, now=NOW)
        records = {r.customer_key: r for r in run.records}
        assert records["cliente 01"].days_since_last_purchase == 1
        assert records["cliente 01"].recency_score == 5
        assert records["cliente 10"].recency_score == 1

    def test_extreme_scores_classify(self):
        """A (5, 5, 5) customer is a Champion and a (1, 1, 1) customer is Lost."""
        grid = [
            ["Cliente", "Data", "Valor", "Recência", "Frequência", "Score Valor"],
            ["Ana", "30/05/2024", "900", "5", "5", "5"],
            ["Bia", "01/01/2023", "10", "1", "1", "1"],
        ]
        run = run_segmentation(grid, now=NOW)
        records = {r.customer_key: r for r in run.records}
        assert records["ana"].segment is Segment.CHAMPIONS
        assert records["bia"].segment is Segment.LOST

    def test_segment_matches_scores(self, sales_grid):
        """Without overrides every segment is the classification of its scores."""
        run = run_segmentation(sales_grid, now=NOW)
        for record in run.records:
            assert record.segment is classify_segment(
                record.recency_score, record.frequency_score, record.value_score
            )

    def test_display_order(self, sales_grid):
        """Records are ordered by segment priority, then value."""
        run = run_segmentation(sales_grid, now=NOW)
        keys = [(r.segment.priority, -r.total_value, r.customer_key) for r in run.records]
        assert keys == sorted(keys)

    def test_idempotent_for_fixed_now(self, sales_grid):
        """Two runs with the same inputs produce identical records."""
        first = run_segmentation(sales_grid, now=NOW)
        second = run_segmentation(sales_grid, now=NOW)
        assert first.records == second.records

    def test_score_override_round_trip(self):
        """A pre-computed recency score survives into the output record."""
        grid = [
            ["Cliente", "Data", "Valor", "Recência"],
            ["Ana", "01/01/2020", "10", "5"],
            ["Bia", "30/05/2024", "10", ""],
        ]
        run = run_segmentation(grid, now=NOW)
        ana = next(r for r in run.records if r.customer_key == "ana")
        assert ana.recency_score == 5

    def test_manual_mapping(self):
        """An explicit mapping replaces detection."""
        grid = [
            ["Quem", "Quando", "Quanto"],
            ["Ana", "01/05/2024", "10"],
        ]
        mapping = ColumnMapping(customer_name="Quem", purchase_date="Quando", amount="Quanto")
        run = run_segmentation(grid, mapping=mapping, now=NOW)
        assert run.mapping == mapping
        assert [r.customer_key for r in run.records] == ["ana"]

    def test_incomplete_mapping(self):
        """Undetectable required fields raise before aggregation."""
        grid = [["Quem", "Quando"], ["Ana", "01/05/2024"]]
        with pytest.raises(MappingIncompleteError) as excinfo:
            run_segmentation(grid, now=NOW)
        assert "customer_name" in excinfo.value.missing

    def test_unknown_mapped_column(self):
        """A mapping naming an absent column is rejected."""
        grid = [["Cliente", "Data", "Valor"], ["Ana", "01/05/2024", "10"]]
        mapping = ColumnMapping(customer_name="Cliente", purchase_date="Data", amount="Total")
        with pytest.raises(UnknownColumnError):
            run_segmentation(grid, mapping=mapping, now=NOW)

    def test_summary(self, sales_grid):
        """The summary carries mapping, counters and the segment breakdown."""
        summary = run_segmentation(sales_grid, now=NOW).summary()
        assert summary["header_row"] == 2
        assert summary["reference_date"] == "2024-06-01"
        assert summary["mapping"]["customer_name"] == "Cliente"
        assert sum(summary["segment_breakdown"].values()) == 3
        assert "records_saved" not in summary["counters"]


class TestRunSegmentationWithStore:
    """Test persisting a run."""

    def test_records_and_upload_log_saved(self, sales_grid, store):
        """Records are upserted and the upload is logged."""
        run = run_segmentation(
            sales_grid,
            now=NOW,
            store=store,
            uploaded_by="user-1",
            uploaded_by_name="Operadora",
            file_name="vendas.xlsx",
        )
        assert run.persist is not None
        assert run.persist.ok
        assert run.persist.succeeded == 3
        assert run.persist.batches == 2
        assert run.counters()["records_saved"] == 3
        assert run.counters()["failed_batches"] == 0

        stored = store.query_customers(CustomerQuery(sort_by="name", descending=False))
        assert [r.customer_key for r in stored] == ["ana lima", "joão souza", "maria silva"]
        assert store.get_customer("Maria Silva") == next(
            r for r in run.records if r.customer_key == "maria silva"
        )

        [log] = store.list_upload_logs()
        assert log.uploaded_by == "user-1"
        assert log.uploaded_by_name == "Operadora"
        assert log.file_name == "vendas.xlsx"
        assert log.total_customers == 3
        assert log.segment_breakdown == run.segment_breakdown()
        assert log.data_reference_date == date(2024, 6, 1)
        assert log.notes is None

    def test_rerun_does_not_duplicate(self, sales_grid, store):
        """Re-running the same upload updates rows in place."""
        run_segmentation(sales_grid, now=NOW, store=store)
        run_segmentation(sales_grid, now=NOW, store=store)
        assert len(store.query_customers()) == 3
        assert len(store.list_upload_logs()) == 2

    def test_upload_log_failure_returns_run(self, sales_grid, store, monkeypatch):
        """A failing upload log still returns the run with its counters."""

        def locked(*args, **kwargs):
            raise OperationalError("INSERT INTO rfv_upload_logs", {}, Exception("log table locked"))

        monkeypatch.setattr(store, "record_upload", locked)
        run = run_segmentation(sales_grid, now=NOW, store=store)

        assert run.persist.succeeded == 3
        assert "log table locked" in run.persist.log_error
        assert run.counters()["records_saved"] == 3
        assert run.counters()["upload_logged"] is False
        assert len(store.query_customers()) == 3

"""Integration tests for the command line tools."""

import json

import pandas as pd
import pytest
import structlog
from sqlalchemy.exc import OperationalError

from customer_rfv.cli import detect_columns_cli, query_cli, segment_cli
from customer_rfv.persistence import RFVCustomerStore

SALES_CSV = (
    "Relatório de Atendimentos\n"
    "Período: janeiro a maio\n"
    "\n"
    "Paciente;Telefone;E-mail;Data Atendimento;Valor Total\n"
    "Maria Silva;11999990000;maria@example.com;01/05/2024;R$ 1.234,56\n"
    "MARIA SILVA;;;20/05/2024;R$ 200,00\n"
    "João Souza;11988880000;;10/01/2024;R$ 80,00\n"
    "Ana Lima;;ana@example.com;invalid;R$ 30,00\n"
    "Ana Lima;;;28/05/2024;R$ 20,00\n"
)


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for name in (
        "RFV_DATABASE_URL",
        "RFV_BATCH_SIZE",
        "RFV_LOG_LEVEL",
        "RFV_LOG_JSON",
        "RFV_UPLOADED_BY",
        "RFV_TRACE",
    ):
        monkeypatch.delenv(name, raising=False)
    yield
    structlog.reset_defaults()


@pytest.fixture
def sales_file(tmp_path):
    path = tmp_path / "atendimentos.csv"
    path.write_text(SALES_CSV, encoding="utf-8")
    return path


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'rfv.db'}"


def read_json(capsys):
    return json.loads(capsys.readouterr().out)


class TestDetectColumnsCli:
    """Test the detect-columns command."""

    def test_detect(self, sales_file, capsys):
        """The header row and mapping are printed as JSON."""
        assert detect_columns_cli([str(sales_file)]) == 0
        payload = read_json(capsys)
        assert payload["header_row"] == 3
        assert payload["labels"] == ["Paciente", "Telefone", "E-mail", "Data Atendimento", "Valor Total"]
        assert payload["mapping"]["customer_name"] == "Paciente"
        assert payload["mapping"]["amount"] == "Valor Total"
        assert payload["missing"] == []

    def test_missing_file(self, tmp_path):
        """Unreadable input exits with 1."""
        assert detect_columns_cli([str(tmp_path / "missing.csv")]) == 1


class TestSegmentCli:
    """Test the segment command."""

    def test_segment_without_store(self, sales_file, capsys):
        """Without a database the summary is printed and nothing is saved."""
        assert segment_cli([str(sales_file), "--now", "2024-06-01"]) == 0
        summary = read_json(capsys)
        assert summary["reference_date"] == "2024-06-01"
        assert summary["counters"]["unique_customers"] == 3
        assert summary["counters"]["skipped_no_date"] == 1
        assert "records_saved" not in summary["counters"]
        assert sum(summary["segment_breakdown"].values()) == 3

    def test_segment_with_store_and_exports(self, sales_file, database_url, tmp_path, capsys):
        """Records are saved, exported and queryable afterwards."""
        csv_path = tmp_path / "out" / "clientes.csv"
        report_path = tmp_path / "out" / "relatorio.md"
        exit_code = segment_cli(
            [
                str(sales_file),
                "--now",
                "2024-06-01",
                "--database-url",
                database_url,
                "--uploaded-by",
                "user-1",
                "--batch-size",
                "2",
                "--output-csv",
                str(csv_path),
                "--report",
                str(report_path),
            ]
        )
        assert exit_code == 0
        summary = read_json(capsys)
        assert summary["counters"]["records_saved"] == 3
        assert summary["counters"]["records_failed"] == 0

        exported = pd.read_csv(csv_path)
        assert len(exported) == 3
        assert "## Storage" in report_path.read_text(encoding="utf-8")

        assert query_cli(["--database-url", database_url, "--search", "maria"]) == 0
        [maria] = read_json(capsys)
        assert maria["customer_key"] == "maria silva"
        assert maria["total_purchases"] == 2
        assert maria["total_value"] == "1434.56"
        assert maria["email"] == "maria@example.com"

    def test_json_report(self, sales_file, tmp_path, capsys):
        """Reports without a .md suffix are JSON."""
        report_path = tmp_path / "relatorio.json"
        assert segment_cli([str(sales_file), "--now", "2024-06-01", "--report", str(report_path)]) == 0
        capsys.readouterr()
        report = json.loads(report_path.read_text(encoding="utf-8"))
        assert report["metadata"] == {"file_name": "atendimentos.csv"}
        assert len(report["segments"]) == 6

    def test_mapping_override(self, sales_file, capsys):
        """--map corrects the detected mapping."""
        assert segment_cli([str(sales_file), "--now", "2024-06-01", "--map", "phone="]) == 0
        assert "phone" not in read_json(capsys)["mapping"]

    def test_incomplete_mapping_exits_2(self, sales_file):
        """Unmapping a required field aborts with exit code 2."""
        assert segment_cli([str(sales_file), "--map", "amount="]) == 2

    def test_unknown_field_exits_2(self, sales_file):
        """Typos in --map field names abort with exit code 2."""
        assert segment_cli([str(sales_file), "--map", "amout=Valor Total"]) == 2

    def test_unknown_column_exits_2(self, sales_file):
        """Mapping to an absent column aborts with exit code 2."""
        assert segment_cli([str(sales_file), "--map", "amount=Preço"]) == 2

    def test_malformed_override(self, sales_file):
        """--map values without '=' are usage errors."""
        with pytest.raises(SystemExit) as excinfo:
            segment_cli([str(sales_file), "--map", "amount"])
        assert excinfo.value.code == 2

    def test_missing_input_exits_1(self, tmp_path):
        """Unreadable input exits with 1."""
        assert segment_cli([str(tmp_path / "missing.csv")]) == 1

    def test_database_url_from_environment(self, sales_file, database_url, monkeypatch, capsys):
        """RFV_DATABASE_URL enables persistence without flags."""
        monkeypatch.setenv("RFV_DATABASE_URL", database_url)
        assert segment_cli([str(sales_file), "--now", "2024-06-01"]) == 0
        assert read_json(capsys)["counters"]["records_saved"] == 3

    def test_upload_log_failure_exits_1(self, sales_file, database_url, monkeypatch, capsys):
        """Saved records with a missing upload log still exit with 1."""

        def locked(self, *args, **kwargs):
            raise OperationalError("INSERT INTO rfv_upload_logs", {}, Exception("log table locked"))

        monkeypatch.setattr(RFVCustomerStore, "record_upload", locked)
        assert segment_cli([str(sales_file), "--now", "2024-06-01", "--database-url", database_url]) == 1
        counters = read_json(capsys)["counters"]
        assert counters["records_saved"] == 3
        assert counters["upload_logged"] is False


class TestQueryCli:
    """Test the query command."""

    def test_requires_database(self):
        """Without a database URL the command is a usage error."""
        with pytest.raises(SystemExit) as excinfo:
            query_cli([])
        assert excinfo.value.code == 2

    def test_filters(self, sales_file, database_url, capsys):
        """Filters and ordering are applied."""
        assert segment_cli([str(sales_file), "--now", "2024-06-01", "--database-url", database_url]) == 0
        capsys.readouterr()

        assert query_cli(["--database-url", database_url, "--sort-by", "name", "--ascending"]) == 0
        assert [r["name"] for r in read_json(capsys)] == ["Ana Lima", "João Souza", "Maria Silva"]

        assert query_cli(["--database-url", database_url, "--min-value", "100", "--limit", "1"]) == 0
        assert [r["customer_key"] for r in read_json(capsys)] == ["maria silva"]

    def test_invalid_range(self, database_url):
        """Inverted ranges are usage errors."""
        with pytest.raises(SystemExit) as excinfo:
            query_cli(["--database-url", database_url, "--min-days", "10", "--max-days", "1"])
        assert excinfo.value.code == 2

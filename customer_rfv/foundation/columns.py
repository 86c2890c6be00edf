"""Header discovery and column mapping for schema-less spreadsheet grids.

Exported spreadsheets commonly prepend report titles and filter summaries
before the real header row, and every source system names its columns
differently. This module finds the header row, turns the grid into
label-keyed rows, and guesses which label carries each canonical field.
The guessed :class:`ColumnMapping` is only a default: callers may correct
any entry before processing continues.
"""

from __future__ import annotations

import re
import unicodedata
from typing import Any, Iterable, Mapping, Sequence

import structlog
from pydantic import BaseModel, ConfigDict

from customer_rfv.errors import MappingIncompleteError, UnknownColumnError
from customer_rfv.foundation.normalization import clean_text, is_blank

logger = structlog.get_logger(__name__)

RawRow = Mapping[str, Any]

# Number of leading rows inspected when looking for the header
HEADER_SCAN_ROWS = 15

# Minimum number of text cells a header row must have
MIN_HEADER_TEXT_CELLS = 2

HEADER_KEYWORDS = (
    "nome",
    "cliente",
    "paciente",
    "name",
    "customer",
    "data",
    "date",
    "valor",
    "value",
    "total",
    "amount",
    "email",
    "e-mail",
    "telefone",
    "phone",
    "celular",
    "compra",
    "purchase",
)

_PLACEHOLDER_LABEL = re.compile(r"^(unnamed: \d+|__empty(_\d+)?)$", re.IGNORECASE)
_NUMERIC_LABEL = re.compile(r"^-?\d+([.,]\d+)?$")


def fold_label(label: str) -> str:
    """Lower-case a label and strip accents (``"Último Preço"`` -> ``"ultimo preco"``)."""
    decomposed = unicodedata.normalize("NFKD", label)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return stripped.lower().strip()


def _rule_text(label: str) -> str:
    folded = fold_label(label)
    folded = re.sub(r"[_.\-]+", " ", folded)
    return re.sub(r"\s+", " ", folded).strip()


class ColumnMapping(BaseModel):
    """Canonical field -> source column label.

    An empty string means the field is not mapped. The model is immutable;
    use :meth:`with_overrides` for manual corrections.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    customer_name: str = ""
    phone: str = ""
    whatsapp: str = ""
    email: str = ""
    cpf: str = ""
    record_id: str = ""
    purchase_date: str = ""
    amount: str = ""
    first_purchase_date: str = ""
    total_purchases: str = ""
    total_value: str = ""
    average_ticket: str = ""
    days_since_last_purchase: str = ""
    recency_score: str = ""
    frequency_score: str = ""
    value_score: str = ""
    segment_override: str = ""

    def with_overrides(self, **overrides: str) -> "ColumnMapping":
        """Return a copy with the given fields replaced.

        Unknown field names raise ``ValueError`` so typos are not ignored.
        """
        unknown = sorted(set(overrides) - set(type(self).model_fields))
        if unknown:
            raise ValueError(f"Unknown mapping fields: {', '.join(unknown)}")
        return self.model_copy(update={k: (v or "").strip() for k, v in overrides.items()})

    def mapped(self) -> dict[str, str]:
        """Return only the fields that point at a column."""
        return {field: label for field, label in self.model_dump().items() if label}

    def missing_requirements(self) -> list[str]:
        """Describe every unmet requirement; empty when the mapping is usable."""
        missing = []
        if not self.customer_name:
            missing.append("customer_name")
        if not (self.purchase_date or self.days_since_last_purchase):
            missing.append("purchase_date or days_since_last_purchase")
        if not (self.amount or self.total_value):
            missing.append("amount or total_value")
        return missing

    def validate_for(self, columns: Sequence[str] | None = None) -> None:
        """Check the mapping is complete and refers to existing labels.

        Raises
        ------
        MappingIncompleteError
            Required fields are unmapped.
        UnknownColumnError
            A mapped label is not present in ``columns``.
        """
        missing = self.missing_requirements()
        if missing:
            raise MappingIncompleteError(missing, available=columns or ())
        if columns is not None:
            known = set(columns)
            unknown = [label for label in self.mapped().values() if label not in known]
            if unknown:
                raise UnknownColumnError(unknown)


# Ordered (field, pattern) rules. A label is assigned to the first rule whose
# field is still free and whose pattern matches the folded label.
MAPPING_RULES: tuple[tuple[str, re.Pattern[str]], ...] = tuple(
    (field, re.compile(pattern))
    for field, pattern in (
        ("days_since_last_purchase", r"\bdias\b|\bdays\b"),
        ("recency_score", r"recen|^r$|^r score$"),
        ("frequency_score", r"frequen|^f$|^f score$"),
        ("value_score", r"^[vm]$|^[vm] score$|monetar|score (valor|value)|(valor|value) score"),
        ("segment_override", r"segment|classifica"),
        ("first_purchase_date", r"(primeira|first)\b.*\b(compra|purchase|data|date)|\b(data|date)\b.*\b(primeira|first)"),
        ("average_ticket", r"ticket|\bmedio\b|\baverage\b|\bavg\b"),
        (
            "total_purchases",
            r"\b(qtd|qtde|quantidade|numero|num|count|total)\b( de)? (compras|pedidos|vendas|purchases|orders)\b"
            r"|^(compras|pedidos|purchases|orders)$",
        ),
        ("total_value", r"total (value|gasto|spent|acumulado)|valor acumulado|gasto total|\bltv\b|lifetime"),
        ("cpf", r"\bcpf\b|\bdocumento\b|\btax id\b"),
        ("record_id", r"prontuario|\bcodigo\b|\bcod\b|\bid\b|\brecord\b|matricula"),
        ("whatsapp", r"whats|\bwpp\b|\bzap\b"),
        ("phone", r"telefone|phone|celular|\bfone\b|\btel\b"),
        ("email", r"e ?mail"),
        ("purchase_date", r"\bdata\b|\bdate\b|\bdt\b|emissao|ultima compra|last purchase"),
        ("amount", r"valor|value|amount|preco|price|montante|\btotal\b"),
        ("customer_name", r"cliente|paciente|\bnome\b|\bname\b|customer|comprador|consumidor"),
    )
)


def is_candidate_label(label: str) -> bool:
    """True when a header label may be assigned to a canonical field."""
    text = label.strip()
    if not text:
        return False
    if _NUMERIC_LABEL.match(text):
        return False
    return not _PLACEHOLDER_LABEL.match(text)


def candidate_labels(labels: Iterable[str]) -> list[str]:
    return [label for label in labels if is_candidate_label(label)]


def detect_column_mapping(labels: Sequence[str]) -> ColumnMapping:
    """Guess the canonical field of each header label.

    Single pass, first match wins: each label is tested against
    :data:`MAPPING_RULES` in order and claims the first unfilled field whose
    pattern matches. Once a field is filled it is not reassigned.

    Examples
    --------
    >>> mapping = detect_column_mapping(["Cliente", "Data da Compra", "Valor", "Telefone"])
    >>> mapping.customer_name, mapping.purchase_date, mapping.amount, mapping.phone
    ('Cliente', 'Data da Compra', 'Valor', 'Telefone')
    """
    assigned: dict[str, str] = {}
    for label in candidate_labels(labels):
        text = _rule_text(label)
        for field, pattern in MAPPING_RULES:
            if field in assigned:
                continue
            if pattern.search(text):
                assigned[field] = label
                break

    if not assigned:
        logger.warning("no_recognizable_columns", labels=list(labels))
    return ColumnMapping(**assigned)


def _is_header_candidate(row: Sequence[Any]) -> bool:
    texts = [cell.strip() for cell in row if isinstance(cell, str) and cell.strip()]
    if len(texts) < MIN_HEADER_TEXT_CELLS:
        return False
    return any(keyword in fold_label(text) for text in texts for keyword in HEADER_KEYWORDS)


def locate_header_row(rows: Sequence[Sequence[Any]], max_rows: int = HEADER_SCAN_ROWS) -> int:
    """Return the 0-based index of the row most likely to hold column labels.

    A row qualifies when it has at least two non-empty text cells and one of
    them contains a :data:`HEADER_KEYWORDS` entry. The first qualifying row
    among the first ``max_rows`` wins; row 0 is the fallback. Never raises.
    """
    for index, row in enumerate(rows[:max_rows]):
        if _is_header_candidate(row):
            return index
    return 0


def build_labels(header: Sequence[Any]) -> list[str]:
    """Turn header cells into unique labels.

    Empty cells become ``Unnamed: <index>`` and repeated labels get ``.1``,
    ``.2`` suffixes, matching pandas' conventions. A suffix is skipped when
    the header already uses it, so ``["Valor", "Valor", "Valor.1"]`` becomes
    ``["Valor", "Valor.1", "Valor.1.1"]``.
    """
    labels: list[str] = []
    emitted: set[str] = set()
    suffixes: dict[str, int] = {}
    for index, cell in enumerate(header):
        base = clean_text(cell) or f"Unnamed: {index}"
        label = base
        while label in emitted:
            suffixes[base] = suffixes.get(base, 0) + 1
            label = f"{base}.{suffixes[base]}"
        emitted.add(label)
        labels.append(label)
    return labels


def split_grid(
    grid: Sequence[Sequence[Any]],
    header_index: int | None = None,
) -> tuple[list[str], list[dict[str, Any]]]:
    """Split a raw grid into header labels and label-keyed data rows.

    Rows above the header are discarded, as are data rows whose cells are
    all empty. ``header_index`` defaults to :func:`locate_header_row`.
    """
    if not grid:
        return [], []

    if header_index is None:
        header_index = locate_header_row(grid)
    width = max(len(row) for row in grid)
    header = list(grid[header_index]) + [None] * (width - len(grid[header_index]))
    labels = build_labels(header)

    rows: list[dict[str, Any]] = []
    for raw in grid[header_index + 1 :]:
        if all(is_blank(cell) for cell in raw):
            continue
        cells = list(raw) + [None] * (width - len(raw))
        rows.append(dict(zip(labels, cells)))

    logger.info(
        "header_row_located",
        header_row=header_index,
        columns=len(labels),
        data_rows=len(rows),
    )
    return labels, rows

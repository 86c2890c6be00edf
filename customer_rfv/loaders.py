"""Read spreadsheet exports into raw cell grids.

The engine works on grids (rows of cells) rather than DataFrames with a
header, because exported reports often carry titles and filter summaries
above the real header row. Header discovery happens later, in
:func:`customer_rfv.foundation.columns.split_grid`.
"""

from __future__ import annotations

import csv
import io
import zipfile
from pathlib import Path
from typing import Any, Union

import pandas as pd
import structlog

from customer_rfv.errors import InputFileError
from customer_rfv.foundation.normalization import is_blank

logger = structlog.get_logger(__name__)

MAX_INPUT_BYTES = 25 * 1024 * 1024  # 25 MiB cap to avoid accidental OOM

EXCEL_SUFFIXES = {".xlsx", ".xlsm", ".xls"}
TEXT_SUFFIXES = {".csv", ".txt", ".tsv"}
DELIMITERS = ",;\t|"
SNIFF_LINES = 100

Grid = list[list[Any]]


def _check_size(path: Path) -> None:
    try:
        size = path.stat().st_size
    except OSError as exc:
        raise InputFileError(f"Cannot read input file {path}: {exc}") from exc
    if size > MAX_INPUT_BYTES:
        raise InputFileError(
            f"Input file {path} is {size} bytes; exceeds limit of {MAX_INPUT_BYTES} bytes"
        )


def _clean_cells(rows: list[list[Any]]) -> Grid:
    return [[None if is_blank(cell) else cell for cell in row] for row in rows]


def _read_excel(path: Path, sheet_name: Union[int, str]) -> Grid:
    frame = pd.read_excel(path, sheet_name=sheet_name, header=None, dtype=object)
    return _clean_cells([list(row) for row in frame.itertuples(index=False, name=None)])


def _read_delimited(path: Path) -> Grid:
    # Rows above the header are usually narrower than the table, which the
    # pandas parsers reject, so the text is tokenised row by row.
    text = path.read_text(encoding="utf-8-sig")
    # Title lines without any delimiter would defeat the sniffer's
    # consistency check.
    sample = "\n".join(
        line for line in text.splitlines()[:SNIFF_LINES] if any(d in line for d in DELIMITERS)
    )
    try:
        dialect = csv.Sniffer().sniff(sample, delimiters=DELIMITERS)
    except csv.Error:
        dialect = csv.excel
    return _clean_cells([list(row) for row in csv.reader(io.StringIO(text), dialect)])


def load_grid(path: Union[str, Path], sheet_name: Union[int, str] = 0) -> Grid:
    """Load a spreadsheet or delimited text file as a list of rows.

    Parameters
    ----------
    path:
        ``.xlsx``/``.xlsm``/``.xls`` workbooks are read with pandas (openpyxl
        engine for OOXML); ``.csv``/``.tsv``/``.txt`` files are read as UTF-8
        with the delimiter sniffed among ``, ; TAB |``.
    sheet_name:
        Worksheet index or name for workbooks

    Returns
    -------
    list[list]
        Raw cells; empty cells are ``None``. Workbook cells keep their native
        types (numbers, datetimes); text files yield strings.

    Raises
    ------
    InputFileError
        The file is missing, too large, of an unsupported type or unreadable.
    """
    path = Path(path)
    _check_size(path)

    suffix = path.suffix.lower()
    try:
        if suffix in EXCEL_SUFFIXES:
            grid = _read_excel(path, sheet_name)
        elif suffix in TEXT_SUFFIXES:
            grid = _read_delimited(path)
        else:
            raise InputFileError(f"Unsupported input file type: {path.suffix or path.name}")
    except InputFileError:
        raise
    except (OSError, ValueError, zipfile.BadZipFile) as exc:
        raise InputFileError(f"Cannot read input file {path}: {exc}") from exc

    logger.info("grid_loaded", path=str(path), rows=len(grid))
    return grid

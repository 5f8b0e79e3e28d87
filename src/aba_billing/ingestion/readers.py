"""Read uploaded time-log files into row dicts.

Supported formats:
  - .csv / .txt: delimited text (utf-8, BOM tolerated), delimiter sniffed
  - .xlsx / .xlsm: first worksheet, first row is the header

Row order is preserved. Empty cells become None; xlsx cells keep their
native types (datetime, time, float) so the time parser can use them.
"""

from __future__ import annotations

import csv
import io
import logging
import zipfile
from pathlib import PurePath
from typing import Any

import openpyxl
from openpyxl.utils.exceptions import InvalidFileException

logger = logging.getLogger(__name__)

PREVIEW_ROW_LIMIT = 50

CSV_EXTENSIONS = frozenset({".csv", ".txt"})
XLSX_EXTENSIONS = frozenset({".xlsx", ".xlsm"})


class FileFormatError(ValueError):
    """Raised when an upload cannot be read as a table."""


def _header_names(cells: list[Any]) -> list[str]:
    headers: list[str] = []
    for position, cell in enumerate(cells):
        base = str(cell).strip() if cell is not None else ""
        key = base or f"Column_{position + 1}"
        suffix = 0
        while key in headers:
            suffix += 1
            key = f"{base or 'Column'}_{suffix}"
        headers.append(key)
    return headers


def _normalize(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


def _read_csv(content: bytes) -> list[dict[str, Any]]:
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise FileFormatError("CSV file is not valid UTF-8") from e

    try:
        dialect = csv.Sniffer().sniff(text[:4096], delimiters=",;\t|")
    except csv.Error:
        dialect = csv.excel

    reader = csv.reader(io.StringIO(text), dialect)
    header = next(reader, None)
    if header is None:
        return []
    headers = _header_names(header)

    rows: list[dict[str, Any]] = []
    for record in reader:
        values = [_normalize(value) for value in record]
        if not any(value is not None for value in values):
            continue
        values += [None] * (len(headers) - len(values))
        rows.append(dict(zip(headers, values)))
    return rows


def _read_xlsx(content: bytes) -> list[dict[str, Any]]:
    try:
        workbook = openpyxl.load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as e:
        raise FileFormatError(f"Could not open spreadsheet: {e}") from e

    try:
        sheet = workbook.worksheets[0]
        iterator = sheet.iter_rows(values_only=True)
        header = next(iterator, None)
        if header is None:
            return []
        headers = _header_names(list(header))

        rows: list[dict[str, Any]] = []
        for record in iterator:
            values = [_normalize(value) for value in record]
            if not any(value is not None for value in values):
                continue
            values += [None] * (len(headers) - len(values))
            rows.append(dict(zip(headers, values[: len(headers)])))
        return rows
    finally:
        workbook.close()


def read_tabular(content: bytes, filename: str) -> list[dict[str, Any]]:
    """Read a CSV or XLSX upload into a list of row dicts.

    Raises:
        FileFormatError: If the extension is unsupported or the file is unreadable
    """
    extension = PurePath(filename).suffix.lower()
    if extension in CSV_EXTENSIONS:
        rows = _read_csv(content)
    elif extension in XLSX_EXTENSIONS:
        rows = _read_xlsx(content)
    else:
        raise FileFormatError(f"Unsupported file type: {extension or filename}")

    logger.info("Read %d rows from %s", len(rows), filename)
    return rows


def preview_tabular(content: bytes, filename: str, limit: int = PREVIEW_ROW_LIMIT) -> dict[str, Any]:
    """Column names, total row count and the first ``limit`` rows."""
    rows = read_tabular(content, filename)
    columns: list[str] = []
    for row in rows:
        for column in row:
            if column not in columns:
                columns.append(column)
    return {
        "columns": columns,
        "total_rows": len(rows),
        "rows": rows[:limit],
    }

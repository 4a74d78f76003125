"""Parsing and normalisation of job data sources.

A job is driven by one of three payloads:

* ``csv``              - tabular rows, one dict per row (column -> value)
* ``script``           - free text used as a script for the carousel
* ``natural-language`` - instructions the processor turns into prompts

CSV text and spreadsheet uploads are parsed with pandas so quoting, embedded
commas and escaped quotes follow the usual CSV rules.
"""

import io
import zipfile
from typing import Any

import pandas as pd

from app.errors import JobValidationError
from app.models.job import DATA_TYPE_CSV

SPREADSHEET_SUFFIXES = (".xlsx", ".xlsm")


def _frame_to_rows(df: pd.DataFrame) -> list[dict[str, str]]:
    df = df.dropna(how="all")
    df.columns = [str(c).strip() for c in df.columns]
    df = df.fillna("")
    rows: list[dict[str, str]] = []
    for record in df.to_dict(orient="records"):
        rows.append({k: str(v).strip() for k, v in record.items()})
    return rows


def parse_csv_text(text: str) -> list[dict[str, str]]:
    """Parse CSV text with a header row into a list of row dicts.

    Every value is returned as a stripped string; missing trailing cells
    become ``""`` and blank lines are skipped.

    Raises:
        JobValidationError: the text is not valid CSV.
    """
    if not text or not text.strip():
        return []
    try:
        df = pd.read_csv(
            io.StringIO(text),
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
            skipinitialspace=True,
        )
    except (pd.errors.ParserError, pd.errors.EmptyDataError, ValueError) as exc:
        raise JobValidationError(f"Failed to parse CSV file: {exc}") from exc
    return _frame_to_rows(df)


def parse_spreadsheet_bytes(data: bytes) -> list[dict[str, str]]:
    """Parse the first sheet of an .xlsx upload into row dicts."""
    try:
        df = pd.read_excel(io.BytesIO(data), engine="openpyxl", dtype=str)
    except (ValueError, OSError, zipfile.BadZipFile) as exc:
        raise JobValidationError(f"Failed to read spreadsheet: {exc}") from exc
    return _frame_to_rows(df)


def validate_csv_schema(rows: list[dict[str, Any]], required_columns: list[str]) -> bool:
    """True if there is at least one row and it has every required column."""
    if not rows:
        return False
    first = rows[0]
    return all(column in first for column in required_columns)


def require_columns(rows: list[dict[str, Any]], required_columns: list[str]) -> None:
    """Raise ``JobValidationError`` unless ``validate_csv_schema`` passes."""
    if not required_columns or validate_csv_schema(rows, required_columns):
        return
    if not rows:
        raise JobValidationError("Data file has no rows")
    missing = [c for c in required_columns if c not in rows[0]]
    raise JobValidationError(f"Data file is missing required columns: {', '.join(missing)}")


def parse_upload(filename: str, data: bytes) -> list[dict[str, str]]:
    """Parse an uploaded data file: .xlsx through openpyxl, anything else as CSV."""
    if filename.lower().endswith(SPREADSHEET_SUFFIXES):
        return parse_spreadsheet_bytes(data)
    try:
        text = data.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise JobValidationError("CSV file must be UTF-8 text") from exc
    return parse_csv_text(text)


def normalize_data_content(
    data_type: str, content: list[dict[str, Any]] | str | None
) -> list[dict[str, Any]] | str:
    """Coerce a payload into the shape stored for ``data_type``.

    CSV payloads given as text are parsed into rows; text payloads must be
    strings.
    """
    if data_type == DATA_TYPE_CSV:
        if content is None:
            return []
        if isinstance(content, str):
            return parse_csv_text(content)
        if not all(isinstance(row, dict) for row in content):
            raise JobValidationError("CSV data must be a list of row objects")
        return list(content)

    if content is None:
        return ""
    if not isinstance(content, str):
        raise JobValidationError(f"{data_type} data must be text")
    return content

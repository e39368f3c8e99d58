"""
Tabular data extractor for uploaded spreadsheets.

Reads the first sheet of an Excel workbook or a CSV file and returns one
dict per data row, keyed by trimmed column header. Every cell comes back
as text; blank cells are empty strings.
"""

from io import BytesIO
from typing import Union
import structlog

import pandas as pd

from exceptions import FileParseError

logger = structlog.get_logger(__name__)

EXCEL_EXTENSIONS = (".xlsx", ".xls")
CSV_EXTENSIONS = (".csv",)
SUPPORTED_EXTENSIONS = EXCEL_EXTENSIONS + CSV_EXTENSIONS


def is_supported_file(filename: str) -> bool:
    return filename.lower().endswith(SUPPORTED_EXTENSIONS)


def _cell_to_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, float):
        if pd.isna(value):
            return ""
        # Excel stores integers as floats (12.0); keep them as "12"
        if value.is_integer():
            return str(int(value))
    if isinstance(value, pd.Timestamp):
        return value.isoformat()
    return str(value).strip()


def _read_frame(content: Union[bytes, BytesIO], filename: str) -> pd.DataFrame:
    buffer = BytesIO(content) if isinstance(content, bytes) else content
    lower = filename.lower()

    if lower.endswith(EXCEL_EXTENSIONS):
        # Try openpyxl first (xlsx), fall back to xlrd (xls)
        last_error: Exception = ValueError("no Excel engine tried")
        for engine in ("openpyxl", "xlrd"):
            try:
                buffer.seek(0)
                return pd.read_excel(buffer, sheet_name=0, header=None, dtype=object, engine=engine)
            except Exception as e:
                last_error = e
        raise last_error

    if lower.endswith(CSV_EXTENSIONS):
        return pd.read_csv(
            buffer,
            header=None,
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
            encoding="utf-8-sig",
        )

    raise FileParseError(
        message="Invalid file type. Only .xlsx, .xls and .csv files are allowed.",
        details={"filename": filename}
    )


def extract_rows(content: Union[bytes, BytesIO], filename: str) -> list[dict[str, str]]:
    """
    Parse an uploaded file into rows of named fields.

    Args:
        content: Raw file bytes or buffer
        filename: Original file name (extension selects the reader)

    Returns:
        Ordered list of {column header: cell text}

    Raises:
        FileParseError: If the structure is unreadable
    """
    try:
        df = _read_frame(content, filename)
    except FileParseError:
        raise
    except Exception as e:
        logger.warning("tabular_parse_failed", filename=filename, error=str(e))
        raise FileParseError(
            message=f"Could not read {filename}: {e}",
            details={"filename": filename}
        )

    # Header row is read as data so the reader cannot rename duplicates (NAME.1)
    headers = [_cell_to_text(c) for c in df.iloc[0]] if len(df) else []
    if not headers or any(h == "" for h in headers):
        raise FileParseError(
            message="File must have a header row with a name for every column",
            details={"filename": filename, "columns": headers}
        )
    if len(set(headers)) != len(headers):
        raise FileParseError(
            message="Duplicate column headers",
            details={"filename": filename, "columns": headers}
        )
    body = df.iloc[1:].set_axis(headers, axis=1)

    rows: list[dict[str, str]] = []
    for record in body.to_dict(orient="records"):
        row = {h: _cell_to_text(record.get(h)) for h in headers}
        if any(v != "" for v in row.values()):
            rows.append(row)

    logger.info("tabular_parsed", filename=filename, rows=len(rows), columns=len(headers))
    return rows

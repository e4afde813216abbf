"""
Dataset Processing Module

Handles roster parsing, legacy encoding detection and dataset summaries.

Rows are split strictly on commas after quote stripping. A comma inside a
quoted value is NOT escaped and shifts the remaining cells; legacy datasets
were stored with this splitter, so the same behaviour is kept for them.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import pandas as pd

from .errors import ColumnNotFoundError, MalformedInputError

logger = logging.getLogger(__name__)


@dataclass
class ParsedTable:
    """Ordered columns plus rows as ordered column -> value mappings"""
    columns: List[str]
    rows: List[Dict[str, str]] = field(default_factory=list)

    @property
    def row_count(self) -> int:
        return len(self.rows)


def split_cells(line: str) -> List[str]:
    """Split one delimited line into trimmed, quote-stripped cells"""
    return [cell.strip().replace('"', "") for cell in line.split(",")]


def build_row(columns: List[str], values: List[str]) -> Dict[str, str]:
    """Map values onto columns, padding missing cells with empty strings"""
    return {column: (values[index] if index < len(values) else "") for index, column in enumerate(columns)}


def ingest(raw: str) -> ParsedTable:
    """
    Parse raw delimited text into a table

    The first line is the header; every later line that is not blank after
    trimming becomes a row.

    Args:
        raw: Uploaded roster text

    Returns:
        ParsedTable with the detected columns and rows

    Raises:
        MalformedInputError: If no columns are detected
    """
    lines = (raw or "").strip().split("\n")
    header = lines[0].strip()
    if not header:
        raise MalformedInputError("No columns detected in dataset header")

    columns = split_cells(header)
    if not any(columns):
        raise MalformedInputError("No columns detected in dataset header")

    rows = []
    for line in lines[1:]:
        if not line.strip():
            continue
        rows.append(build_row(columns, split_cells(line)))

    logger.info(f"Ingested dataset with {len(columns)} columns and {len(rows)} rows")
    return ParsedTable(columns=columns, rows=rows)


def _load_json(value: Optional[str]) -> Any:
    try:
        return json.loads(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _stringify(value: Any) -> str:
    return "" if value is None else str(value)


def decode_canonical(rows_data: Optional[str], columns_data: Optional[str]) -> Optional[ParsedTable]:
    """
    Decode the canonical JSON encoding

    Returns:
        ParsedTable, or None when either part is not a JSON array
    """
    rows = _load_json(rows_data)
    columns = _load_json(columns_data)
    if not isinstance(rows, list) or not isinstance(columns, list):
        return None

    columns = [_stringify(column) for column in columns]
    table_rows = []
    for row in rows:
        if isinstance(row, dict):
            table_rows.append({column: _stringify(row.get(column)) for column in columns})
        elif isinstance(row, list):
            table_rows.append(build_row(columns, [_stringify(value) for value in row]))
    return ParsedTable(columns=columns, rows=table_rows)


def parse_legacy_columns(columns_data: Optional[str]) -> List[str]:
    """Parse legacy columns stored either as a JSON array or a comma-separated string"""
    parsed = _load_json(columns_data)
    if isinstance(parsed, list):
        return [_stringify(column).strip() for column in parsed]
    if not (columns_data or "").strip():
        return []
    return [column.strip() for column in columns_data.split(",")]


def parse_legacy_rows(rows_text: Optional[str], columns: List[str]) -> List[Dict[str, str]]:
    """
    Parse legacy delimited row text

    The first line is skipped when it contains the first column name,
    which is how an embedded header line is recognised.
    """
    lines = (rows_text or "").strip().split("\n")
    start_index = 1 if columns and lines and columns[0] in lines[0] else 0

    rows = []
    for line in lines[start_index:]:
        line = line.strip()
        if line:
            rows.append(build_row(columns, split_cells(line)))
    return rows


def decode_legacy(rows_data: Optional[str], columns_data: Optional[str]) -> ParsedTable:
    columns = parse_legacy_columns(columns_data)
    return ParsedTable(columns=columns, rows=parse_legacy_rows(rows_data, columns))


def is_canonical(rows_data: Optional[str], columns_data: Optional[str]) -> bool:
    return decode_canonical(rows_data, columns_data) is not None


def decode_dataset(rows_data: Optional[str], columns_data: Optional[str]) -> ParsedTable:
    """Decode a stored dataset from either encoding"""
    table = decode_canonical(rows_data, columns_data)
    if table is not None:
        return table
    return decode_legacy(rows_data, columns_data)


def encode_table(table: ParsedTable) -> tuple[str, str]:
    """
    Encode a table in canonical form

    Returns:
        Tuple of (rows_data, columns_data) JSON strings
    """
    rows_data = json.dumps([{column: row.get(column, "") for column in table.columns} for row in table.rows], ensure_ascii=False)
    columns_data = json.dumps(table.columns, ensure_ascii=False)
    return rows_data, columns_data


def to_dataframe(table: ParsedTable) -> pd.DataFrame:
    """Build a string-typed DataFrame preserving column order"""
    return pd.DataFrame(table.rows, columns=table.columns, dtype=str).fillna("")


def get_dataset_info(table: ParsedTable, preview_rows: int = 5) -> dict:
    """
    Get information about the dataset structure and content

    Args:
        table: Decoded dataset
        preview_rows: Number of leading rows to include

    Returns:
        Dictionary with dataset metadata
    """
    df = to_dataframe(table)
    empty_cells = {column: int((df[column].str.strip() == "").sum()) for column in table.columns}

    return {
        "total_rows": len(df),
        "columns": list(table.columns),
        "total_columns": len(table.columns),
        "empty_cells": empty_cells,
        "complete_rows": int((df.apply(lambda col: col.str.strip() != "")).all(axis=1).sum()) if len(df) else 0,
        "preview": df.head(preview_rows).to_dict(orient="records"),
    }


def validate_dataset_size(table: ParsedTable, max_rows: int) -> None:
    """
    Validate dataset size against maximum allowed rows

    Raises:
        MalformedInputError: If the dataset exceeds the size limit
    """
    if table.row_count > max_rows:
        raise MalformedInputError(
            f"Dataset too large. Maximum allowed rows: {max_rows}, received: {table.row_count}"
        )


def require_columns(table: ParsedTable, *columns: str) -> None:
    """Raise ColumnNotFoundError for the first column missing from the table"""
    for column in columns:
        if column not in table.columns:
            raise ColumnNotFoundError(column, table.columns)

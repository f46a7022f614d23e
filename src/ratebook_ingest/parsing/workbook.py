"""
Workbook reading.

Turns uploaded bytes into an ordered list of named sheets, each a plain grid
of cell values (str, int, float or None). A CSV is a single-sheet workbook.
"""

import csv
import os
import zipfile
from dataclasses import dataclass, field
from io import BytesIO, StringIO
from typing import Any, List, Optional

import pandas as pd
import structlog

from ..exceptions import ValidationError

logger = structlog.get_logger()

ALLOWED_EXTENSIONS = {'.xlsx', '.xlsm', '.csv'}
CSV_ENCODINGS = ['utf-8-sig', 'cp1252', 'latin-1']
ZIP_MAGIC = b"PK\x03\x04"

Cell = Any
Grid = List[List[Cell]]


@dataclass
class Sheet:
    name: str
    rows: Grid = field(default_factory=list)

    @property
    def width(self) -> int:
        return max((len(r) for r in self.rows), default=0)

    def non_empty_rows(self, limit: Optional[int] = None) -> List[List[Cell]]:
        found = []
        for row in self.rows:
            if any(c is not None for c in row):
                found.append(row)
                if limit is not None and len(found) >= limit:
                    break
        return found


def _clean(value: Any) -> Cell:
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


def _frame_to_grid(df: pd.DataFrame) -> Grid:
    grid = df.astype(object).where(pd.notna(df), None).values.tolist()
    return [[_clean(v) for v in row] for row in grid]


def _decode_csv(content: bytes) -> str:
    for encoding in CSV_ENCODINGS:
        try:
            return content.decode(encoding)
        except UnicodeDecodeError:
            continue
    raise ValidationError("Could not decode CSV file with any supported encoding")


def read_csv(content: bytes, sheet_name: str = "Sheet1") -> Sheet:
    """Parse CSV content; ragged rows are padded to the widest row."""
    text = _decode_csv(content)
    width = max((len(r) for r in csv.reader(StringIO(text))), default=0)
    if width == 0:
        return Sheet(name=sheet_name)
    try:
        df = pd.read_csv(
            StringIO(text),
            header=None,
            names=list(range(width)),
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=False,
        )
    except (pd.errors.ParserError, ValueError) as e:
        raise ValidationError(f"Failed to parse CSV file: {e}") from e
    return Sheet(name=sheet_name, rows=_frame_to_grid(df))


def read_excel(content: bytes) -> List[Sheet]:
    """Parse every sheet of an Excel workbook, in workbook order."""
    try:
        frames = pd.read_excel(BytesIO(content), sheet_name=None, header=None, engine="openpyxl")
    except (ValueError, KeyError, OSError, zipfile.BadZipFile) as e:
        raise ValidationError(f"Failed to parse Excel file: {e}") from e
    return [Sheet(name=str(name), rows=_frame_to_grid(df)) for name, df in frames.items()]


def read_workbook(content: bytes, file_name: str) -> List[Sheet]:
    """Read an uploaded rate sheet by extension, sniffing zip content when unnamed."""
    if not content:
        raise ValidationError("File is empty")
    ext = os.path.splitext((file_name or "").lower())[1]
    if not ext:
        ext = '.xlsx' if content.startswith(ZIP_MAGIC) else '.csv'
    if ext not in ALLOWED_EXTENSIONS:
        raise ValidationError(
            f"File type {ext} not allowed. Supported: {', '.join(sorted(ALLOWED_EXTENSIONS))}"
        )

    if ext == '.csv':
        stem = os.path.splitext(os.path.basename(file_name or ""))[0] or "Sheet1"
        sheets = [read_csv(content, sheet_name=stem)]
    else:
        sheets = read_excel(content)

    logger.debug("Workbook read", file_name=file_name, sheets=[s.name for s in sheets])
    return sheets

"""
Format Detector

Classifies each sheet of a workbook as ``tabular`` (one header row, one rate
per data row), ``matrix`` (payment profiles and mileage bands as row/column
headers) or ``unknown``. Sheets named in the provider's skip list are
``skipped`` before their content is looked at.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import structlog

from ..mapping.column_mapper import ColumnMapper
from ..normalize.text import norm
from ..parsing.matrix_decoder import MIN_TERM_COLUMNS, TERM_CODE, TERM_LABEL_MAX_COLUMN
from ..parsing.profile_grid import detect_profile_grid
from ..parsing.workbook import Sheet
from ..profiles.dsl import ProviderProfile

logger = structlog.get_logger()

TABULAR = "tabular"
MATRIX = "matrix"
UNKNOWN = "unknown"
SKIPPED = "skipped"

HEADER_SCAN_ROWS = 5
TERM_SCAN_ROWS = 40
MIN_HEADER_MATCHES = 3
TABULAR_CONFIDENCE_FLOOR = 60
MATRIX_CONFIDENCE = 90
PROFILE_GRID_CONFIDENCE = 80


@dataclass
class SheetDetection:
    sheet_name: str
    format: str
    confidence: int
    reason: str
    header_row_index: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_parseable(self) -> bool:
        return self.format in (TABULAR, MATRIX)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sheet_name": self.sheet_name,
            "format": self.format,
            "confidence": self.confidence,
            "reason": self.reason,
            "header_row_index": self.header_row_index,
            "metadata": self.metadata,
        }


def tabular_confidence(matches: int) -> int:
    return min(95, 40 + 10 * matches)


class FormatDetector:
    """Per-sheet layout classification."""

    def __init__(self, profile: Optional[ProviderProfile] = None,
                 mapper: Optional[ColumnMapper] = None):
        self.profile = profile or ProviderProfile(provider_code="default")
        self.mapper = mapper or ColumnMapper()

    def detect_sheet(self, sheet: Sheet) -> SheetDetection:
        if self.profile.should_skip_sheet(sheet.name):
            return SheetDetection(sheet.name, SKIPPED, 100, "Sheet name is on the provider skip list")

        if not sheet.non_empty_rows(limit=1):
            return SheetDetection(sheet.name, UNKNOWN, 0, "Sheet is empty")

        tabular = self._detect_tabular(sheet)
        if tabular is not None:
            return tabular

        matrix = self._detect_term_matrix(sheet.rows)
        if matrix is not None:
            return SheetDetection(sheet.name, MATRIX, MATRIX_CONFIDENCE,
                                  f"Term header row {matrix['header_row'] + 1} "
                                  f"with {matrix['term_columns']} term columns",
                                  header_row_index=matrix['header_row'], metadata=matrix)

        grid = detect_profile_grid(sheet.rows)
        if grid is not None:
            return SheetDetection(sheet.name, MATRIX, PROFILE_GRID_CONFIDENCE,
                                  f"Payment profile grid ({grid.orientation})",
                                  header_row_index=grid.header_row, metadata=grid.metadata())

        return SheetDetection(sheet.name, UNKNOWN, 0,
                              "No header row with 3+ known fields and no term header row found")

    def _detect_tabular(self, sheet: Sheet) -> Optional[SheetDetection]:
        seen = 0
        for index, row in enumerate(sheet.rows):
            if not any(c is not None for c in row):
                continue
            matches = self.mapper.count_header_matches(row)
            if matches >= MIN_HEADER_MATCHES:
                return SheetDetection(
                    sheet.name, TABULAR, tabular_confidence(matches),
                    f"Header row {index + 1} matches {matches} known fields",
                    header_row_index=index,
                    metadata={"layout": "tabular", "header_matches": matches},
                )
            seen += 1
            if seen >= HEADER_SCAN_ROWS:
                break
        return None

    @staticmethod
    def _detect_term_matrix(rows: Sequence[Sequence[Any]]) -> Optional[Dict[str, Any]]:
        for index, row in enumerate(rows[:TERM_SCAN_ROWS]):
            for col in range(min(TERM_LABEL_MAX_COLUMN + 1, len(row))):
                if norm(row[col]) != "term":
                    continue
                codes = [c for c in row[col + 1:] if isinstance(c, str) and TERM_CODE.match(c)]
                if len(codes) >= MIN_TERM_COLUMNS:
                    return {
                        "layout": "term_columns",
                        "row_axis": "vehicle/annual_mileage",
                        "column_axis": "term",
                        "has_sub_columns": False,
                        "header_row": index,
                        "term_columns": len(codes),
                    }
        return None

    def detect_workbook(self, sheets: Sequence[Sheet]) -> List[SheetDetection]:
        detections = [self.detect_sheet(sheet) for sheet in sheets]
        logger.info("Workbook formats detected",
                    provider_code=self.profile.provider_code,
                    sheets={d.sheet_name: d.format for d in detections})
        return detections

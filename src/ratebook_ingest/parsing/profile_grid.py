"""
Profile-grid matrix sheets: one vehicle per sheet (typically a funder quote),
with payment profiles down the rows and mileage bands across the columns, or
the transpose. Columns may split into maintained / non-maintained pairs and
rows may be grouped under contract-type section labels (BCH, PCH ...).

Profile codes in these sheets always count initial + remaining months.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog

from ..exceptions import RowParseError
from ..normalize.text import normalize_manufacturer
from ..normalize.units import (
    LIST_PRICE, RENTAL, TermConvention, clean_cell, parse_payment_plan, to_minor_units,
)
from ..profiles.dsl import ProviderProfile
from .matrix_decoder import split_vehicle_name
from .models import ParseOutcome, RateRow

logger = structlog.get_logger()

PROFILE_CODE = re.compile(r"^(\d{1,2})\s*\+\s*(\d{1,2})$")
CONTRACT_SECTIONS = ("BCH", "HCH", "PCH", "BSSNL", "CH", "CHNM", "PCHNM")
MAINTAINED_SECTIONS = {"BCH", "PCH", "CH"}
CAP_CODE = re.compile(r"^[A-Z]{2,4}\d{2,3}[A-Z0-9\s]{5,}$", re.IGNORECASE)
CAP_ID = re.compile(r"\b\d{5,6}\b")

KNOWN_MANUFACTURERS = (
    "ALFA ROMEO", "AUDI", "BMW", "BYD", "CITROEN", "CUPRA", "FIAT", "FORD", "HONDA",
    "HYUNDAI", "JAGUAR", "KIA", "LAND ROVER", "MAZDA", "MERCEDES", "MG", "MINI",
    "NISSAN", "PEUGEOT", "RENAULT", "SEAT", "SKODA", "TOYOTA", "VAUXHALL", "VOLKSWAGEN",
    "VOLVO", "VW",
)

PROFILE_SCAN_ROWS = 20
MILEAGE_SCAN_ROWS = 15
VEHICLE_SCAN_ROWS = 5


def parse_mileage_header(value: Any) -> Optional[int]:
    """Strict mileage column label: ``"10k"``, ``"10000"`` or ``"10,000"``."""
    text = clean_cell(value)
    if text is None:
        return None
    cleaned = re.sub(r"[,\s]", "", text).lower()
    k_match = re.match(r"^(\d+)k$", cleaned)
    if k_match:
        return int(k_match.group(1)) * 1000
    if re.match(r"^\d{4,5}$", cleaned):
        return int(cleaned)
    if re.match(r"^\d{4,5}\.0$", cleaned):  # numeric cells read as floats
        return int(float(cleaned))
    return None


def _is_profile(value: Any) -> bool:
    text = clean_cell(value)
    return bool(text and PROFILE_CODE.match(text))


def _sub_column_flag(value: Any) -> Optional[bool]:
    text = (clean_cell(value) or "").lower()
    if not text:
        return None
    if "non" in text or text == "nm" or "without" in text:
        return False
    if "maint" in text or text == "m" or "with" in text:
        return True
    return None


@dataclass
class GridLayout:
    orientation: str                   # "payment_profile_rows" | "mileage_rows"
    header_row: int
    data_start_row: int
    columns: List[Tuple[int, Any]]     # (column index, mileage or profile code)
    sub_columns: Dict[int, Tuple[int, bool]] = field(default_factory=dict)  # col -> (mileage, maintained)
    sections: List[str] = field(default_factory=list)

    @property
    def has_sub_columns(self) -> bool:
        return bool(self.sub_columns)

    def metadata(self) -> Dict[str, Any]:
        if self.orientation == "payment_profile_rows":
            row_axis, column_axis = "payment_profile", "annual_mileage"
        else:
            row_axis, column_axis = "annual_mileage", "payment_profile"
        return {
            "layout": "profile_grid",
            "row_axis": row_axis,
            "column_axis": column_axis,
            "has_sub_columns": self.has_sub_columns,
            "sections": self.sections,
            "header_row": self.header_row,
            "data_start_row": self.data_start_row,
        }


def _detect_sections(rows: Sequence[Sequence[Any]]) -> List[str]:
    found: List[str] = []
    for row in rows:
        for cell in row:
            value = (clean_cell(cell) or "").upper()
            if value in CONTRACT_SECTIONS and value not in found:
                found.append(value)
    return found


def detect_profile_grid(rows: Sequence[Sequence[Any]]) -> Optional[GridLayout]:
    """Find a payment-profile x mileage grid, or None."""
    profile_rows = [i for i, row in enumerate(rows[:PROFILE_SCAN_ROWS]) if row and _is_profile(row[0])]
    if len(profile_rows) >= 3:
        first = profile_rows[0]
        for header_row in (first - 1, first - 2, first - 3):
            if header_row < 0:
                continue
            columns = []
            for col, cell in enumerate(rows[header_row]):
                mileage = parse_mileage_header(cell) if col > 0 else None
                if mileage and mileage not in [m for _, m in columns]:
                    columns.append((col, mileage))
            if len(columns) >= 2:
                layout = GridLayout("payment_profile_rows", header_row, first, columns,
                                    sections=_detect_sections(rows))
                if header_row != first - 1:
                    _attach_sub_columns(layout, rows[first - 1])
                return layout

    mileage_rows = [i for i, row in enumerate(rows[:MILEAGE_SCAN_ROWS])
                    if row and parse_mileage_header(row[0])]
    if len(mileage_rows) >= 3 and mileage_rows[0] > 0:
        header = rows[mileage_rows[0] - 1]
        columns = [(col, clean_cell(cell)) for col, cell in enumerate(header) if col > 0 and _is_profile(cell)]
        if len(columns) >= 3:
            return GridLayout("mileage_rows", mileage_rows[0] - 1, mileage_rows[0], columns,
                              sections=_detect_sections(rows))
    return None


def _attach_sub_columns(layout: GridLayout, sub_header: Sequence[Any]) -> None:
    for col, cell in enumerate(sub_header):
        flag = _sub_column_flag(cell)
        if col == 0 or flag is None:
            continue
        owner = None
        for mileage_col, mileage in layout.columns:
            if col >= mileage_col:
                owner = mileage
        if owner is not None:
            layout.sub_columns[col] = (owner, flag)


@dataclass
class GridVehicle:
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    variant: Optional[str] = None
    cap_code: Optional[str] = None
    cap_id: Optional[str] = None
    otr: Optional[int] = None


def extract_vehicle(rows: Sequence[Sequence[Any]], sheet_name: str,
                    aliases: Optional[Dict[str, str]] = None) -> GridVehicle:
    """Vehicle identity from labelled header cells, falling back to the sheet name."""
    vehicle = GridVehicle()
    for row in rows[:VEHICLE_SCAN_ROWS]:
        for col, cell in enumerate(row):
            label = (clean_cell(cell) or "").lower()
            if not label:
                continue
            following = clean_cell(row[col + 1]) if col + 1 < len(row) else None
            if ("cap code" in label or label == "capcode") and following and CAP_CODE.match(following):
                vehicle.cap_code = following
            elif "cap id" in label or label == "capid":
                id_match = CAP_ID.search(label) or (CAP_ID.search(following) if following else None)
                if id_match:
                    vehicle.cap_id = id_match.group(0)
            elif label in ("manufacturer", "make") and following:
                vehicle.manufacturer = normalize_manufacturer(following, aliases)
            elif label in ("model", "vehicle", "description", "derivative") and following:
                vehicle.variant = following
            elif label == "otr" and following is not None:
                otr = to_minor_units(following, LIST_PRICE)
                if otr and otr > 1000000:
                    vehicle.otr = otr

    name = vehicle.variant or sheet_name.strip()
    if vehicle.manufacturer is None:
        upper = name.upper()
        for candidate in KNOWN_MANUFACTURERS:
            if upper.startswith(candidate):
                vehicle.manufacturer = normalize_manufacturer(name[:len(candidate)].title(), aliases)
                break
    if vehicle.manufacturer:
        vehicle.model, vehicle.variant = split_vehicle_name(name, vehicle.manufacturer)
    return vehicle


class ProfileGridDecoder:
    def __init__(self, layout: GridLayout, vehicle: GridVehicle,
                 profile: Optional[ProviderProfile] = None, sheet_name: str = ""):
        self.layout = layout
        self.vehicle = vehicle
        self.profile = profile or ProviderProfile(provider_code="default")
        self.sheet_name = sheet_name

    def decode(self, rows: Sequence[Sequence[Any]]) -> ParseOutcome:
        outcome = ParseOutcome(sheet=self.sheet_name)
        section: Optional[str] = None
        for row_index in range(self.layout.data_start_row, len(rows)):
            row = rows[row_index]
            if not row or all(c is None for c in row):
                continue
            label = clean_cell(row[0]) or ""
            if label.upper() in CONTRACT_SECTIONS:
                section = label.upper()
                continue
            cells = self._cells_for_row(row, label, section)
            if cells and not (self.vehicle.manufacturer and self.vehicle.model) and not self.vehicle.cap_code:
                outcome.errors.append(RowParseError(self.sheet_name, row_index, "missing vehicle identifier"))
                continue
            for column, code, mileage, maintained in cells:
                raw = row[column] if column < len(row) else None
                pence = to_minor_units(raw, RENTAL)
                if pence is None:
                    continue
                plan = parse_payment_plan(code, convention=TermConvention.SUM)
                outcome.rates.append(RateRow(
                    manufacturer=self.vehicle.manufacturer or "",
                    model=self.vehicle.model or "",
                    variant=self.vehicle.variant,
                    term=plan.total_term_months,
                    annual_mileage=mileage,
                    payment_plan_code=plan.code,
                    initial_months=plan.initial_months,
                    total_rental=pence,
                    source_sheet=self.sheet_name,
                    source_row_index=row_index,
                    cap_code=self.vehicle.cap_code,
                    cap_id=self.vehicle.cap_id,
                    otr=self.vehicle.otr,
                    is_maintained=maintained,
                    raw={"section": section, "column": column},
                ))
        logger.debug("Profile grid decoded", sheet=self.sheet_name,
                     rates=len(outcome.rates), errors=len(outcome.errors))
        return outcome

    def _cells_for_row(self, row: Sequence[Any], label: str,
                       section: Optional[str]) -> List[Tuple[int, str, int, Optional[bool]]]:
        """(column, profile code, mileage, maintained) for every price cell of a data row."""
        section_flag = None
        if section:
            section_flag = section in MAINTAINED_SECTIONS
        if self.layout.orientation == "payment_profile_rows":
            if not PROFILE_CODE.match(label):
                return []
            if self.layout.sub_columns:
                return [(col, label, mileage, flag) for col, (mileage, flag) in sorted(self.layout.sub_columns.items())]
            return [(col, label, mileage, section_flag) for col, mileage in self.layout.columns]

        mileage = parse_mileage_header(row[0])
        if not mileage:
            return []
        return [(col, code, mileage, section_flag) for col, code in self.layout.columns]

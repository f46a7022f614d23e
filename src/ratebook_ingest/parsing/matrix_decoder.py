"""
Matrix Decoder

Row-scanning state machine for matrix rate sheets where a "Term" header row
names the payment-profile columns (``1+23``, ``1+35`` ...) and vehicle and
mileage-band labels run down the left-hand columns.

Every row goes through ``classify`` first, which returns a tagged
``RowClassification``; ``feed`` then applies it to the decoder state
(``term_columns`` and ``current_vehicle``) and emits rates. Classification
priority:

    1. Skip                  boilerplate first cell
    2. TermHeader            "term" in columns 0-2 followed by >= 3 term codes
    3. VehicleAndMileage     vehicle name in column 0, mileage band later, prices
    4. MileageContinuation   empty/info first cell, mileage band, prices, vehicle known
    5. VehicleOnly           descriptive first cell, no mileage, no prices
    6. MileageFirstColumn    mileage band in column 0, prices, vehicle known
    7. Unrecognized

The "Term" label cell heads the mileage column. When a row's mileage cell
sits right of that label, its prices are read shifted by the same amount.
"""

import enum
import re
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple

import structlog

from ..exceptions import RowParseError
from ..normalize.text import norm
from ..normalize.units import (
    RENTAL, TermConvention, clean_cell, parse_decimal, parse_payment_plan, to_minor_units,
)
from ..profiles.dsl import ProviderProfile
from .models import ParseOutcome, RateRow

logger = structlog.get_logger()

MILEAGE_BANDS: Tuple[Tuple[str, int], ...] = (
    ("5k", 5000),
    ("8k", 8000),
    ("10k", 10000),
    ("15k", 15000),
    ("20k", 20000),
    ("25k", 25000),
    ("30k", 30000),
)
TERM_CODE = re.compile(r"^\s*(\d+)\s*\+\s*(\d+)\s*$")
TERM_LABEL_MAX_COLUMN = 2
MIN_TERM_COLUMNS = 3

BODY_TYPES = ("ESTATE", "HATCHBACK", "SALOON", "SUV", "COUPE", "CONVERTIBLE")
MODEL_SUFFIX_TOKENS = {"MACH", "PRO", "MAX", "PLUS", "GT", "RS", "ST"}
DESCRIPTIVE_NAME = re.compile(r"^\w+\s+\d|^\d+\.\d+|auto|manual|estate|hatchback|suv", re.IGNORECASE)
YEAR_IN_PARENS = re.compile(r"\s*\(\d{4}\)\s*")


class RowKind(str, enum.Enum):
    SKIP = "skip"
    TERM_HEADER = "term_header"
    VEHICLE_AND_MILEAGE = "vehicle_and_mileage"
    MILEAGE_CONTINUATION = "mileage_continuation"
    VEHICLE_ONLY = "vehicle_only"
    MILEAGE_FIRST_COLUMN = "mileage_first_column"
    UNRECOGNIZED = "unrecognized"


@dataclass(frozen=True)
class TermColumn:
    column_index: int
    code: str
    initial_months: int
    term_months: int


@dataclass(frozen=True)
class MileageBand:
    mileage: int
    label: str
    column_index: int
    is_maintained: Optional[bool] = None


@dataclass(frozen=True)
class VehicleContext:
    name: str
    model: str
    variant: Optional[str]


@dataclass(frozen=True)
class RowClassification:
    kind: RowKind
    term_columns: Tuple[TermColumn, ...] = ()
    vehicle_name: Optional[str] = None
    mileage: Optional[MileageBand] = None
    price_shift: int = 0


def parse_mileage_band(value: Any, column_index: int = 0) -> Optional[MileageBand]:
    """``"10k -NM"`` -> MileageBand(10000, maintained=False). Text after the prefix is a qualifier."""
    if not isinstance(value, str):
        return None
    lowered = value.strip().lower()
    for prefix, mileage in MILEAGE_BANDS:
        if lowered.startswith(prefix):
            qualifier = lowered[len(prefix):]
            return MileageBand(
                mileage=mileage,
                label=value.strip(),
                column_index=column_index,
                is_maintained=_maintenance_qualifier(qualifier),
            )
    return None


def _maintenance_qualifier(qualifier: str) -> Optional[bool]:
    tokens = set(re.findall(r"[a-z]+", qualifier))
    if not tokens:
        return None
    if tokens & {"nm", "non", "none"}:
        return False
    if tokens & {"m", "maint", "maintained", "maintenance"}:
        return True
    return None


def parse_term_code(value: Any, column_index: int,
                    convention: TermConvention) -> Optional[TermColumn]:
    if not isinstance(value, str) or not TERM_CODE.match(value):
        return None
    plan = parse_payment_plan(value, convention=convention)
    return TermColumn(
        column_index=column_index,
        code=plan.code,
        initial_months=plan.initial_months,
        term_months=plan.total_term_months,
    )


def split_vehicle_name(name: str, manufacturer: str) -> Tuple[str, Optional[str]]:
    """Split a vehicle label into (model, variant).

    Drops a leading manufacturer, a parenthesised year and body-type words.
    The model is the first word, extended to two words when the second is a
    number or a marketing token (GT, RS, Pro ...) and to three for "Mach E".
    """
    cleaned = name.strip()
    if manufacturer and cleaned.lower().startswith(manufacturer.lower()):
        cleaned = cleaned[len(manufacturer):].strip()
    cleaned = YEAR_IN_PARENS.sub(" ", cleaned).strip()
    for body in BODY_TYPES:
        cleaned = re.sub(rf"\s+{body}\b\s*", " ", cleaned, flags=re.IGNORECASE).strip()

    words = cleaned.split()
    if not words:
        return name.strip(), None

    model_end = 1
    if len(words) > 1:
        second = words[1]
        if second.isdigit() or second.upper() in MODEL_SUFFIX_TOKENS:
            model_end = 2
        if len(words) > 2 and second.upper() == "MACH" and words[2].upper() == "E":
            model_end = 3

    model = " ".join(words[:model_end])
    variant = " ".join(words[model_end:]) or None
    return model, variant


def _cell(row: Sequence[Any], index: int) -> Any:
    return row[index] if 0 <= index < len(row) else None


def _text(row: Sequence[Any], index: int) -> str:
    value = clean_cell(_cell(row, index))
    return value or ""


class MatrixDecoder:
    """Finite-state decoder for one matrix sheet."""

    def __init__(self,
                 manufacturer: str,
                 profile: Optional[ProviderProfile] = None,
                 sheet_name: str = "",
                 term_convention: Optional[TermConvention] = None):
        self.manufacturer = manufacturer
        self.profile = profile or ProviderProfile(provider_code="default")
        self.sheet_name = sheet_name
        self.term_convention = term_convention or self.profile.term_convention
        self.term_columns: Tuple[TermColumn, ...] = ()
        self.current_vehicle: Optional[VehicleContext] = None
        self.errors: List[RowParseError] = []

    # --- classification ---

    def classify(self, row: Sequence[Any]) -> RowClassification:
        first = _text(row, 0)
        if first and self.profile.is_boilerplate(first):
            return RowClassification(RowKind.SKIP)

        header = self._term_header(row)
        if header is not None:
            return header

        if not self.term_columns:
            return RowClassification(RowKind.UNRECOGNIZED)

        is_info = bool(first) and self.profile.is_info_row(first)
        first_mileage = parse_mileage_band(_cell(row, 0), 0)
        later_mileage = None if first_mileage else self._later_mileage(row)

        if later_mileage is not None:
            shift = self._price_shift(later_mileage.column_index)
            has_price = self._has_price(row, shift)
            if len(first) > 3 and has_price and not is_info:
                return RowClassification(RowKind.VEHICLE_AND_MILEAGE, vehicle_name=first,
                                         mileage=later_mileage, price_shift=shift)
            if has_price and self.current_vehicle and (not first or is_info):
                return RowClassification(RowKind.MILEAGE_CONTINUATION,
                                         mileage=later_mileage, price_shift=shift)

        if (first_mileage is None and later_mileage is None and len(first) > 3
                and not is_info and DESCRIPTIVE_NAME.search(first)
                and not self._has_price(row, 0)):
            return RowClassification(RowKind.VEHICLE_ONLY, vehicle_name=first)

        if first_mileage is not None and self.current_vehicle:
            shift = self._price_shift(0)
            if self._has_price(row, shift):
                return RowClassification(RowKind.MILEAGE_FIRST_COLUMN,
                                         mileage=first_mileage, price_shift=shift)

        return RowClassification(RowKind.UNRECOGNIZED)

    def _term_header(self, row: Sequence[Any]) -> Optional[RowClassification]:
        label_column = None
        for index in range(min(TERM_LABEL_MAX_COLUMN + 1, len(row))):
            if norm(_cell(row, index)) == "term":
                label_column = index
                break
        if label_column is None:
            return None
        columns = []
        for index in range(label_column + 1, len(row)):
            column = parse_term_code(_cell(row, index), index, self.term_convention)
            if column is not None:
                columns.append(column)
        if len(columns) < MIN_TERM_COLUMNS:
            return None
        return RowClassification(RowKind.TERM_HEADER, term_columns=tuple(columns))

    def _later_mileage(self, row: Sequence[Any]) -> Optional[MileageBand]:
        first_term = self.term_columns[0].column_index
        for index in range(1, max(2, first_term)):
            band = parse_mileage_band(_cell(row, index), index)
            if band is not None:
                return band
        return None

    def _price_shift(self, mileage_column: int) -> int:
        # term codes sitting over the mileage cell are read one column over per overlap
        return max(0, mileage_column - self.term_columns[0].column_index + 1)

    def _has_price(self, row: Sequence[Any], shift: int) -> bool:
        return any(
            to_minor_units(_cell(row, tc.column_index + shift), RENTAL) is not None
            for tc in self.term_columns
        )

    # --- state transitions ---

    def feed(self, row_index: int, row: Sequence[Any]) -> List[RateRow]:
        """Classify one row, update state, and return any rates it carries."""
        result = self.classify(row)

        if result.kind == RowKind.TERM_HEADER:
            self.term_columns = result.term_columns
            return []

        if result.kind in (RowKind.VEHICLE_AND_MILEAGE, RowKind.VEHICLE_ONLY):
            model, variant = split_vehicle_name(result.vehicle_name, self.manufacturer)
            self.current_vehicle = VehicleContext(name=result.vehicle_name, model=model, variant=variant)
            if result.kind == RowKind.VEHICLE_ONLY:
                return []

        if result.kind in (RowKind.VEHICLE_AND_MILEAGE,
                           RowKind.MILEAGE_CONTINUATION,
                           RowKind.MILEAGE_FIRST_COLUMN):
            return self._emit(row_index, row, result.mileage, result.price_shift)

        return []

    def _emit(self, row_index: int, row: Sequence[Any],
              mileage: MileageBand, shift: int) -> List[RateRow]:
        vehicle = self.current_vehicle
        rates = []
        for tc in self.term_columns:
            raw = _cell(row, tc.column_index + shift)
            if clean_cell(raw) is None:
                continue
            pence = to_minor_units(raw, RENTAL)
            if pence is None:
                if parse_decimal(raw) is None:
                    self.errors.append(RowParseError(
                        self.sheet_name, row_index,
                        f"unparseable price '{raw}' for {vehicle.name} {mileage.label} {tc.code}"
                    ))
                continue
            rates.append(RateRow(
                manufacturer=self.manufacturer,
                model=vehicle.model,
                variant=vehicle.variant,
                term=tc.term_months,
                annual_mileage=mileage.mileage,
                payment_plan_code=tc.code,
                initial_months=tc.initial_months,
                total_rental=pence,
                source_sheet=self.sheet_name,
                source_row_index=row_index,
                is_maintained=mileage.is_maintained,
                raw={"vehicle_name": vehicle.name, "mileage_label": mileage.label,
                     "term_code": tc.code, "column": tc.column_index + shift},
            ))
        return rates

    def decode(self, rows: Sequence[Sequence[Any]]) -> ParseOutcome:
        outcome = ParseOutcome(sheet=self.sheet_name)
        for row_index, row in enumerate(rows):
            if not row or all(c is None for c in row):
                continue
            outcome.rates.extend(self.feed(row_index, row))
        outcome.errors.extend(self.errors)
        logger.debug("Matrix sheet decoded",
                     sheet=self.sheet_name,
                     manufacturer=self.manufacturer,
                     rates=len(outcome.rates),
                     errors=len(outcome.errors))
        return outcome


def decode_matrix_sheet(rows: Sequence[Sequence[Any]], manufacturer: str,
                        profile: Optional[ProviderProfile] = None,
                        sheet_name: str = "") -> ParseOutcome:
    return MatrixDecoder(manufacturer, profile=profile, sheet_name=sheet_name).decode(rows)

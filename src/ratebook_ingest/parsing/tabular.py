import re
from typing import Any, Dict, Optional, Sequence

import structlog

from ..exceptions import RowParseError
from ..mapping.column_mapper import MappingResult
from ..mapping.patterns import LIST_PRICE_FIELDS, RENTAL_FIELDS
from ..normalize.text import normalize_manufacturer
from ..normalize.units import (
    LIST_PRICE, RENTAL, clean_cell, parse_float, parse_int, parse_mileage,
    parse_payment_plan, to_minor_units,
)
from ..profiles.dsl import ProviderProfile
from .models import ParseOutcome, RateRow

logger = structlog.get_logger()

_LEADING_NUMBER = re.compile(r"(\d+)")

OPTIONAL_TEXT_FIELDS = ("cap_id", "fuel_type", "transmission", "body_style", "model_year", "insurance_group")
OPTIONAL_MONEY_FIELDS = tuple(sorted((RENTAL_FIELDS | LIST_PRICE_FIELDS) - {"monthly_rental"}))


class TabularParser:
    """Parses data rows below a mapped header row into RateRows."""

    def __init__(self, profile: ProviderProfile, mapping: MappingResult,
                 sheet_name: str, header_row_index: int = 0):
        self.profile = profile
        self.columns = mapping.field_columns
        self.headers = {m.column_index: m.header for m in mapping.matches}
        self.sheet_name = sheet_name
        self.header_row_index = header_row_index

    def parse(self, rows: Sequence[Sequence[Any]]) -> ParseOutcome:
        outcome = ParseOutcome(sheet=self.sheet_name)
        for row_index in range(self.header_row_index + 1, len(rows)):
            row = rows[row_index]
            if not row or all(clean_cell(c) is None for c in row):
                continue
            try:
                outcome.rates.append(self.parse_row(row_index, row))
            except RowParseError as e:
                outcome.errors.append(e)
        logger.debug("Tabular sheet parsed", sheet=self.sheet_name,
                     rates=len(outcome.rates), errors=len(outcome.errors))
        return outcome

    def _get(self, row: Sequence[Any], field_name: str) -> Any:
        index = self.columns.get(field_name)
        if index is None or index >= len(row):
            return None
        return row[index]

    def _term(self, value: Any) -> Optional[int]:
        term = parse_int(value)
        if term is None:
            text = clean_cell(value)
            match = _LEADING_NUMBER.search(text) if text else None
            term = int(match.group(1)) if match else None
        return term if term and term > 0 else None

    def parse_row(self, row_index: int, row: Sequence[Any]) -> RateRow:
        manufacturer = clean_cell(self._get(row, "manufacturer"))
        if manufacturer:
            manufacturer = normalize_manufacturer(manufacturer, self.profile.manufacturer_aliases)
        model = clean_cell(self._get(row, "model"))
        cap_code = clean_cell(self._get(row, "cap_code"))
        if not (manufacturer and model) and not cap_code:
            raise RowParseError(self.sheet_name, row_index, "missing vehicle identifier")

        raw_rental = self._get(row, "monthly_rental")
        rental = to_minor_units(raw_rental, RENTAL)
        if rental is None:
            raise RowParseError(self.sheet_name, row_index, f"unparseable rental '{raw_rental}'")

        term = self._term(self._get(row, "term"))
        plan = parse_payment_plan(
            self._get(row, "payment_plan") or "monthly_in_advance",
            convention=self.profile.term_convention,
            term=term,
        )
        term = term or plan.total_term_months or self.profile.default_term
        mileage = parse_mileage(self._get(row, "annual_mileage")) or self.profile.default_mileage

        extras: Dict[str, Any] = {}
        for field_name in OPTIONAL_MONEY_FIELDS:
            family = RENTAL if field_name in RENTAL_FIELDS else LIST_PRICE
            extras[field_name] = to_minor_units(self._get(row, field_name), family)
        for field_name in OPTIONAL_TEXT_FIELDS:
            extras[field_name] = clean_cell(self._get(row, field_name))
        extras["co2"] = parse_int(self._get(row, "co2"))
        extras["bik_percent"] = parse_float(self._get(row, "bik_percent"))
        extras["excess_mileage_ppm"] = parse_float(self._get(row, "excess_mileage_ppm"))

        return RateRow(
            manufacturer=manufacturer or "",
            model=model or "",
            variant=clean_cell(self._get(row, "variant")),
            term=term,
            annual_mileage=mileage,
            payment_plan_code=plan.code,
            initial_months=plan.initial_months,
            total_rental=rental,
            source_sheet=self.sheet_name,
            source_row_index=row_index,
            cap_code=cap_code,
            low_confidence_plan=plan.low_confidence,
            raw={self.headers.get(i) or str(i): row[i] for i in range(len(row)) if row[i] is not None},
            **extras,
        )

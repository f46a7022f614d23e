"""Monetary and numeric cell normalization.

Provider files mix pounds and pence in the same column family, so
``to_minor_units`` decides per field family: a value above the family's
threshold is taken to be pence already, anything else is pounds.

    rental       -> threshold 10,000 (monthly rentals above £10k do not occur)
    list_price   -> threshold 100,000 (P11D/OTR/basic list price)

Call sites pass the family explicitly.

A value written with ``format_minor_units`` reads back unchanged only while
its pound amount is at or below the family threshold: up to 1,000,000 pence
for rentals and 10,000,000 pence for list prices. Larger amounts format as
pounds above the threshold and read back as pence.
"""

import enum
import math
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional

RENTAL = "rental"
LIST_PRICE = "list_price"

MINOR_UNIT_THRESHOLDS = {
    RENTAL: Decimal(10000),
    LIST_PRICE: Decimal(100000),
}

NULL_TOKENS = {"", "nan", "null", "none", "n/a", "na", "-", "tba", "poa"}

_CURRENCY_NOISE = re.compile(r"[£$€,\s]")
_PLAN_SPLIT = re.compile(r"^\s*(\d+)\s*\+\s*(\d+)\s*$")
_PLAN_SPREAD = re.compile(r"^spread_(\d+)_down$")
_MILEAGE_K = re.compile(r"^(\d+(?:\.\d+)?)\s*k$", re.IGNORECASE)


class TermConvention(str, enum.Enum):
    """How a ``"<initial>+<remaining>"`` code maps to a contract term."""
    REMAINING_PLUS_ONE = "remaining_plus_one"  # 1+23 -> 24, 3+35 -> 36
    SUM = "sum"                                # 3+33 -> 36


def clean_cell(value: Any) -> Optional[str]:
    """Return a trimmed string for a cell, or None for blank/placeholder values."""
    if value is None:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    text = " ".join(str(value).split())
    if text.lower() in NULL_TOKENS:
        return None
    return text


def parse_decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
            return None
        return Decimal(str(value))
    text = clean_cell(value)
    if text is None:
        return None
    cleaned = _CURRENCY_NOISE.sub("", text)
    if not cleaned:
        return None
    try:
        return Decimal(cleaned)
    except InvalidOperation:
        return None


def to_minor_units(value: Any, family: str = RENTAL) -> Optional[int]:
    """Convert a money cell to an integer number of pence.

    Returns None for empty, zero, negative or unparseable input.
    """
    amount = parse_decimal(value)
    if amount is None or not amount.is_finite() or amount <= 0:
        return None
    threshold = MINOR_UNIT_THRESHOLDS[family]
    if amount > threshold:
        return int(amount.quantize(Decimal(1), rounding=ROUND_HALF_UP))
    return int((amount * 100).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def format_minor_units(pence: int) -> str:
    """Render pence as a pounds string, e.g. 123456 -> '£1,234.56'."""
    return f"£{pence / 100:,.2f}"


def parse_int(value: Any) -> Optional[int]:
    """Parse a plain numeric cell (CO2, mileage, term) to an int."""
    amount = parse_decimal(value)
    if amount is None or not amount.is_finite():
        return None
    return int(amount.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def parse_float(value: Any) -> Optional[float]:
    text = clean_cell(value)
    if text is None:
        return None
    amount = parse_decimal(text.rstrip("%"))
    if amount is None or not amount.is_finite():
        return None
    return float(amount)


def parse_mileage(value: Any) -> Optional[int]:
    """Annual mileage from ``10000``, ``"10,000"`` or ``"10k"``."""
    text = clean_cell(value)
    if text is None:
        return None
    k_match = _MILEAGE_K.match(text.replace(",", ""))
    if k_match:
        return int(Decimal(k_match.group(1)) * 1000)
    mileage = parse_int(text)
    if mileage is None or mileage <= 0:
        return None
    return mileage


@dataclass(frozen=True)
class PaymentPlan:
    code: str
    initial_months: int
    total_term_months: Optional[int]
    low_confidence: bool = False

    @property
    def plan_name(self) -> str:
        return payment_plan_name(self.initial_months)


def payment_plan_name(initial_months: int) -> str:
    """Symbolic plan name for a number of upfront rentals."""
    if initial_months <= 1:
        return "monthly_in_advance"
    return f"spread_{initial_months}_down"


def parse_payment_plan(code: Any,
                       convention: TermConvention = TermConvention.REMAINING_PLUS_ONE,
                       term: Optional[int] = None) -> PaymentPlan:
    """Parse a provider payment-plan code.

    ``"<n>+<m>"`` carries its own term (per ``convention``); symbolic codes
    (``monthly_in_advance``, ``spread_<n>_down``) take ``term`` from the
    caller. Anything else falls back to one initial month and is flagged
    ``low_confidence``.
    """
    text = clean_cell(code) or ""
    split = _PLAN_SPLIT.match(text)
    if split:
        initial, remaining = int(split.group(1)), int(split.group(2))
        if initial > 0 and remaining > 0:
            if TermConvention(convention) == TermConvention.SUM:
                total = initial + remaining
            else:
                total = remaining + 1
            return PaymentPlan(code=text, initial_months=initial, total_term_months=total)

    symbolic = text.lower().replace(" ", "_").replace("-", "_")
    if symbolic == "monthly_in_advance":
        return PaymentPlan(code=text, initial_months=1, total_term_months=term)
    spread = _PLAN_SPREAD.match(symbolic)
    if spread and int(spread.group(1)) > 0:
        return PaymentPlan(code=text, initial_months=int(spread.group(1)), total_term_months=term)

    return PaymentPlan(code=text, initial_months=1, total_term_months=term, low_confidence=True)

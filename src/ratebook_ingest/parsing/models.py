from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

from ..exceptions import RowParseError


@dataclass(frozen=True)
class RateRow:
    """One parsed rate, money in pence. Immutable once emitted by a parser."""
    manufacturer: str
    model: str
    variant: Optional[str]
    term: int
    annual_mileage: int
    payment_plan_code: str
    initial_months: int
    total_rental: int
    source_sheet: str
    source_row_index: int

    cap_code: Optional[str] = None
    cap_id: Optional[str] = None
    lease_rental: Optional[int] = None
    service_rental: Optional[int] = None
    non_recoverable_vat: Optional[int] = None
    p11d: Optional[int] = None
    otr: Optional[int] = None
    basic_list_price: Optional[int] = None
    co2: Optional[int] = None
    fuel_type: Optional[str] = None
    transmission: Optional[str] = None
    body_style: Optional[str] = None
    model_year: Optional[str] = None
    insurance_group: Optional[str] = None
    bik_percent: Optional[float] = None
    bik_tax_lower_rate: Optional[int] = None
    bik_tax_higher_rate: Optional[int] = None
    whole_life_cost: Optional[int] = None
    excess_mileage_ppm: Optional[float] = None
    is_maintained: Optional[bool] = None
    low_confidence_plan: bool = False
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def list_price(self) -> Optional[int]:
        return self.p11d or self.basic_list_price or self.otr

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ParseOutcome:
    """Rates and row errors produced from one sheet."""
    sheet: str
    rates: List[RateRow] = field(default_factory=list)
    errors: List[RowParseError] = field(default_factory=list)

    def extend(self, other: "ParseOutcome") -> None:
        self.rates.extend(other.rates)
        self.errors.extend(other.errors)

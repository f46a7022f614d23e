from pydantic import BaseModel, validator
from typing import Dict, List, Optional

from ..normalize.units import TermConvention

DEFAULT_REQUIRED_FIELDS = ["manufacturer", "model", "monthly_rental", "p11d"]


class ProviderProfile(BaseModel):
    """Versioned per-provider ingestion configuration."""
    provider_code: str
    name: Optional[str] = None
    version: int = 1
    term_convention: TermConvention = TermConvention.REMAINING_PLUS_ONE
    skip_sheets: List[str] = []            # case-insensitive substring of sheet name
    boilerplate_patterns: List[str] = []   # first-cell substrings of rows to ignore
    info_row_patterns: List[str] = []      # option/footnote rows inside a vehicle block
    manufacturer_aliases: Dict[str, str] = {}
    column_mappings: Dict[str, str] = {}   # source header -> canonical field
    required_fields: List[str] = DEFAULT_REQUIRED_FIELDS
    default_term: int = 36
    default_mileage: int = 10000
    default_contract_type: str = "BCH"
    create_missing_vehicles: bool = False

    @validator('provider_code')
    def normalize_code(cls, v):
        if not v or not v.strip():
            raise ValueError('provider_code cannot be empty')
        return v.strip().lower()

    @validator('skip_sheets', 'boilerplate_patterns', 'info_row_patterns', each_item=True)
    def lower_patterns(cls, v):
        return v.strip().lower()

    def should_skip_sheet(self, sheet_name: str) -> bool:
        lowered = sheet_name.lower()
        return any(pattern in lowered for pattern in self.skip_sheets)

    def is_boilerplate(self, text: str) -> bool:
        lowered = text.lower()
        return any(pattern in lowered for pattern in self.boilerplate_patterns)

    def is_info_row(self, text: str) -> bool:
        lowered = text.lower()
        return any(pattern in lowered for pattern in self.info_row_patterns)

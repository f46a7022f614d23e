"""Canonical rate fields and the header patterns that identify them.

Patterns are compared against headers after ``normalize_header`` (lowercase,
accents folded, ``_``/``-``/``/`` turned into spaces).
"""

from typing import Dict, List

FIELD_PATTERNS: Dict[str, List[str]] = {
    "cap_code": ["cap code", "capcode", "cap"],
    "cap_id": ["cap id", "capid"],
    "manufacturer": ["manufacturer", "manufacturer name", "make", "brand", "marque"],
    "model": ["model", "model name", "range"],
    "variant": ["variant", "derivative", "description", "vehicle description", "trim", "version"],
    "term": ["term", "contract term", "contract months", "contract length", "months", "duration"],
    "annual_mileage": ["annual mileage", "mileage", "annual miles", "miles", "contract mileage", "mileage pa"],
    "payment_plan": ["payment profile", "payment plan", "rental profile", "profile"],
    "monthly_rental": [
        "monthly rental", "total monthly rental", "total rental", "rental",
        "monthly payment", "monthly cost", "monthly price",
    ],
    "lease_rental": ["lease rental", "finance rental", "funder rental"],
    "service_rental": ["service rental", "maintenance rental", "maintenance", "service charge"],
    "non_recoverable_vat": ["non recoverable vat", "irrecoverable vat", "nrv"],
    "p11d": ["p11d", "p11d value", "p11d price", "list price"],
    "basic_list_price": ["basic list price", "basic price", "blp"],
    "otr": ["otr", "otr price", "on the road", "on the road price"],
    "co2": ["co2", "co2 emissions", "co2 g km", "emissions"],
    "fuel_type": ["fuel type", "fuel"],
    "transmission": ["transmission", "gearbox"],
    "body_style": ["body style", "body type", "bodystyle", "body"],
    "model_year": ["model year", "year"],
    "insurance_group": ["insurance group", "ins group", "insurance"],
    "bik_percent": ["bik percent", "bik %", "bik rate", "bik"],
    "bik_tax_lower_rate": ["bik tax lower rate", "bik 20%", "bik lower", "20% tax"],
    "bik_tax_higher_rate": ["bik tax higher rate", "bik 40%", "bik higher", "40% tax"],
    "whole_life_cost": ["whole life cost", "whole life", "wlc"],
    "excess_mileage_ppm": ["excess mileage ppm", "excess mileage", "excess ppm", "ppm"],
}

CANONICAL_FIELDS = frozenset(FIELD_PATTERNS)

# Money columns, with the unit family used by to_minor_units
RENTAL_FIELDS = frozenset({
    "monthly_rental", "lease_rental", "service_rental", "non_recoverable_vat",
    "bik_tax_lower_rate", "bik_tax_higher_rate",
})
LIST_PRICE_FIELDS = frozenset({"p11d", "otr", "basic_list_price", "whole_life_cost"})

NUMERIC_FIELDS = RENTAL_FIELDS | LIST_PRICE_FIELDS | frozenset({
    "term", "annual_mileage", "co2", "bik_percent", "excess_mileage_ppm",
})

IGNORE = "ignore"

# A required field is also satisfied by any of its stand-ins
REQUIRED_ALTERNATIVES = {
    "p11d": ("basic_list_price", "otr"),
}

from .units import (
    RENTAL, LIST_PRICE, TermConvention, PaymentPlan,
    clean_cell, parse_decimal, to_minor_units, format_minor_units,
    parse_int, parse_float, parse_mileage, parse_payment_plan, payment_plan_name,
)
from .text import norm, normalize_header, normalize_manufacturer, match_key

__all__ = [
    "RENTAL",
    "LIST_PRICE",
    "TermConvention",
    "PaymentPlan",
    "clean_cell",
    "parse_decimal",
    "to_minor_units",
    "format_minor_units",
    "parse_int",
    "parse_float",
    "parse_mileage",
    "parse_payment_plan",
    "payment_plan_name",
    "norm",
    "normalize_header",
    "normalize_manufacturer",
    "match_key",
]

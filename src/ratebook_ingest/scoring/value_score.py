"""
Value Scoring Engine

Scores a rate 0-100 from its cost ratio, the total paid over the term
divided by the vehicle's list price. Cheaper relative to list price scores
higher.
"""

from typing import Optional

from ..config.settings import get_settings

# (upper bound of cost ratio, score), ascending
SCORE_STEPS = (
    (0.30, 100),
    (0.40, 90),
    (0.50, 80),
    (0.60, 70),
    (0.70, 60),
    (0.80, 50),
    (0.90, 40),
    (1.00, 30),
    (1.25, 20),
)

LABELS = (
    (90, "Exceptional"),
    (70, "Excellent"),
    (50, "Good"),
    (30, "Fair"),
)
LOWEST_LABEL = "Poor"


def cost_ratio(total_rental: int, list_price: int, term: int) -> float:
    return (total_rental * term) / list_price


def score(total_rental: Optional[int], list_price: Optional[int], term: Optional[int]) -> int:
    """Value score for one rate; all money in pence.

    Missing rental, list price or term give the neutral score. A ratio past
    the end of the step table scores 0, as does one above the sanity ceiling.
    """
    settings = get_settings()
    if not total_rental or not list_price or not term or total_rental < 0 or list_price < 0:
        return settings.neutral_score

    ratio = cost_ratio(total_rental, list_price, term)
    if ratio > settings.score_ceiling_ratio:
        return 0
    for bound, value in SCORE_STEPS:
        if ratio <= bound:
            return value
    return 0


def score_label(value: int) -> str:
    for threshold, label in LABELS:
        if value >= threshold:
            return label
    return LOWEST_LABEL

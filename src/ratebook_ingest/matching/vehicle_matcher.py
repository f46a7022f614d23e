"""
Vehicle Matcher

Resolves a provider's parsed (manufacturer, model, variant, list price) to a
catalog CAP code in two tiers:

    exact       manufacturer equal, model and variant-prefix contained   90-100
    model-only  manufacturer equal, model contained                      60-75
    none        no candidate                                             0

Within a tier candidates whose list price is far from the parsed one are
dropped, and the rest are ranked by descriptor similarity then CAP code.
"""

import hashlib
from dataclasses import dataclass
from typing import List, Optional, Tuple

from rapidfuzz import fuzz

from ..config.settings import Settings, get_settings
from ..db.models import Vehicle
from ..normalize.text import match_key
from ..utils.logging import matching_logger
from .catalog import CatalogReader, VehicleFilter

EXACT = "exact"
MODEL_ONLY = "model-only"
NONE = "none"
MANUAL = "manual"
CAP_CODE = "cap-code"


def source_key(provider_code: str, manufacturer: str, model: str, variant: Optional[str]) -> str:
    """Dedup key for a provider's vehicle descriptor."""
    parts = [match_key(provider_code), match_key(manufacturer), match_key(model), match_key(variant)]
    return hashlib.md5("|".join(parts).encode("utf-8")).hexdigest()


def describe(manufacturer: Optional[str], model: Optional[str], variant: Optional[str]) -> str:
    return " ".join(p for p in (manufacturer, model, variant) if p)


@dataclass
class MatchResult:
    cap_code: Optional[str]
    vehicle: Optional[Vehicle]
    confidence: int
    method: str
    candidates_evaluated: int = 0

    @property
    def matched(self) -> bool:
        return self.cap_code is not None

    @classmethod
    def no_match(cls, evaluated: int = 0) -> "MatchResult":
        return cls(cap_code=None, vehicle=None, confidence=0, method=NONE, candidates_evaluated=evaluated)


class VehicleMatcher:
    def __init__(self, catalog: CatalogReader, settings: Optional[Settings] = None):
        self.catalog = catalog
        self.settings = settings or get_settings()

    def find_match(self,
                   manufacturer: Optional[str],
                   model: Optional[str],
                   variant: Optional[str] = None,
                   list_price: Optional[int] = None) -> MatchResult:
        descriptor = describe(manufacturer, model, variant)
        if not manufacturer or not model:
            result = MatchResult.no_match()
            self._log(descriptor, result)
            return result

        evaluated = 0
        variant_prefix = variant.strip()[:self.settings.variant_prefix_length] if variant else None

        candidates = self.catalog.lookup_vehicles(
            VehicleFilter(manufacturer=manufacturer, model=model, variant_prefix=variant_prefix)
        )
        evaluated += len(candidates)
        best = self._rank(descriptor, candidates, list_price)
        if best is not None:
            vehicle, similarity = best
            confidence = self._scale(similarity, self.settings.exact_match_floor, 100)
            result = MatchResult(vehicle.cap_code, vehicle, confidence, EXACT, evaluated)
            self._log(descriptor, result)
            return result

        if variant_prefix:
            candidates = self.catalog.lookup_vehicles(VehicleFilter(manufacturer=manufacturer, model=model))
            evaluated += len(candidates)
            best = self._rank(descriptor, candidates, list_price)
            if best is not None:
                vehicle, similarity = best
                confidence = self._scale(similarity, self.settings.model_only_floor,
                                         self.settings.model_only_ceiling)
                result = MatchResult(vehicle.cap_code, vehicle, confidence, MODEL_ONLY, evaluated)
                self._log(descriptor, result)
                return result

        result = MatchResult.no_match(evaluated)
        self._log(descriptor, result)
        return result

    def _rank(self, descriptor: str, candidates: List[Vehicle],
              list_price: Optional[int]) -> Optional[Tuple[Vehicle, float]]:
        """Best (vehicle, similarity) after list-price rejection, or None."""
        query = match_key(descriptor)
        scored = []
        for vehicle in candidates:
            if self._price_rejected(vehicle, list_price):
                continue
            catalog_text = match_key(describe(vehicle.manufacturer, vehicle.model, vehicle.variant))
            scored.append((fuzz.token_sort_ratio(query, catalog_text), vehicle))
        if not scored:
            return None
        scored.sort(key=lambda s: (-s[0], s[1].cap_code))
        similarity, vehicle = scored[0]
        return vehicle, similarity

    def _price_rejected(self, vehicle: Vehicle, list_price: Optional[int]) -> bool:
        if not list_price or not vehicle.p11d:
            return False
        return abs(vehicle.p11d - list_price) > self.settings.p11d_hard_rejection_pence

    @staticmethod
    def _scale(similarity: float, floor: int, ceiling: int) -> int:
        return floor + round((ceiling - floor) * similarity / 100)

    @staticmethod
    def _log(descriptor: str, result: MatchResult) -> None:
        matching_logger.log_match_result(
            descriptor=descriptor,
            cap_code=result.cap_code,
            confidence=result.confidence,
            method=result.method,
            candidates_evaluated=result.candidates_evaluated,
        )

"""
Column Mapper

Maps tabular source headers to canonical rate fields with confidence scores.
Override layers (explicit, stored per provider, profile, classifier) are
consulted in order before the heuristic pattern table.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import structlog

from ..exceptions import ValidationError
from ..normalize.text import normalize_header
from ..normalize.units import parse_decimal
from .patterns import CANONICAL_FIELDS, FIELD_PATTERNS, IGNORE, NUMERIC_FIELDS, REQUIRED_ALTERNATIVES

logger = structlog.get_logger()

EXACT_CONFIDENCE = 100
PARTIAL_BASE = 60
PARTIAL_SPAN = 35
CONTAINED_CONFIDENCE = 55
NON_NUMERIC_PENALTY = 30
MIN_CONFIDENCE = 50


@dataclass
class OverrideLayer:
    """A header -> field map from outside the heuristic, with its provenance."""
    source: str
    mappings: Dict[str, Optional[str]]
    confidences: Dict[str, int] = field(default_factory=dict)

    def lookup(self, header: str) -> Optional[Tuple[Optional[str], int]]:
        key = normalize_header(header)
        for raw, target in self.mappings.items():
            if normalize_header(raw) == key:
                return target, int(self.confidences.get(raw, EXACT_CONFIDENCE))
        return None


@dataclass
class ColumnMatch:
    header: str
    column_index: int
    field: Optional[str]
    confidence: int
    source: str          # exact | pattern | explicit | stored | profile | classifier | none
    pattern: Optional[str] = None


@dataclass
class MappingResult:
    matches: List[ColumnMatch]

    @property
    def field_columns(self) -> Dict[str, int]:
        return {m.field: m.column_index for m in self.matches if m.field}

    @property
    def mappings(self) -> Dict[str, str]:
        return {m.header: m.field for m in self.matches if m.field}

    @property
    def unmapped_headers(self) -> List[str]:
        return [m.header for m in self.matches if not m.field and m.header]

    def missing_required(self, required_fields: Iterable[str]) -> List[str]:
        mapped = self.field_columns
        return [
            f for f in required_fields
            if f not in mapped and not any(alt in mapped for alt in REQUIRED_ALTERNATIVES.get(f, ()))
        ]

    @property
    def confidence(self) -> int:
        scored = [m.confidence for m in self.matches if m.field]
        return round(sum(scored) / len(scored)) if scored else 0


def _contains_word(haystack: str, needle: str) -> bool:
    return re.search(r"(?<![a-z0-9])" + re.escape(needle) + r"(?![a-z0-9])", haystack) is not None


class ColumnMapper:
    """Heuristic header -> canonical field mapper."""

    def __init__(self, patterns: Optional[Dict[str, List[str]]] = None):
        self.patterns = patterns or FIELD_PATTERNS

    def score_header(self, header: Any) -> List[Tuple[str, int, str]]:
        """All candidate (field, confidence, pattern) for one header, best first.

        Ties on confidence go to the longer, more specific pattern.
        """
        key = normalize_header(header)
        if not key:
            return []
        candidates: List[Tuple[str, int, str]] = []
        for field_name, patterns in self.patterns.items():
            best: Optional[Tuple[str, int, str]] = None
            for pattern in patterns:
                if key == pattern:
                    score = EXACT_CONFIDENCE
                elif _contains_word(key, pattern):
                    score = PARTIAL_BASE + round(PARTIAL_SPAN * len(pattern) / len(key))
                elif len(key) >= 4 and _contains_word(pattern, key):
                    score = CONTAINED_CONFIDENCE
                else:
                    continue
                if best is None or (score, len(pattern)) > (best[1], len(best[2])):
                    best = (field_name, score, pattern)
            if best:
                candidates.append(best)
        candidates.sort(key=lambda c: (c[1], len(c[2])), reverse=True)
        return candidates

    def count_header_matches(self, row: Sequence[Any]) -> int:
        """Distinct canonical fields recognised in a candidate header row."""
        fields = set()
        for cell in row:
            if not isinstance(cell, str):
                continue
            candidates = self.score_header(cell)
            if candidates and candidates[0][1] >= PARTIAL_BASE:
                fields.add(candidates[0][0])
        return len(fields)

    def map_headers(self,
                    headers: Sequence[Any],
                    sample_rows: Sequence[Sequence[Any]] = (),
                    layers: Sequence[OverrideLayer] = ()) -> MappingResult:
        """Map each header to at most one field; each field is used once."""
        proposals: List[ColumnMatch] = []
        for index, raw in enumerate(headers):
            header = "" if raw is None else str(raw).strip()
            proposals.append(self._propose(header, index, sample_rows, layers))

        # A field claimed by several headers goes to the most confident one
        winners: Dict[str, ColumnMatch] = {}
        for match in proposals:
            if not match.field:
                continue
            current = winners.get(match.field)
            if current is None or match.confidence > current.confidence:
                winners[match.field] = match
        for match in proposals:
            if match.field and winners[match.field] is not match:
                match.field, match.source, match.confidence = None, "none", 0

        result = MappingResult(matches=proposals)
        logger.debug(
            "Headers mapped",
            mapped=len(result.field_columns),
            unmapped=len(result.unmapped_headers),
            confidence=result.confidence
        )
        return result

    def _propose(self, header: str, index: int,
                 sample_rows: Sequence[Sequence[Any]],
                 layers: Sequence[OverrideLayer]) -> ColumnMatch:
        if not header:
            return ColumnMatch(header=header, column_index=index, field=None, confidence=0, source="none")

        for layer in layers:
            hit = layer.lookup(header)
            if hit is None:
                continue
            target, confidence = hit
            if not target or target == IGNORE:
                return ColumnMatch(header, index, None, 0, layer.source)
            if target not in CANONICAL_FIELDS:
                raise ValidationError(
                    f"Mapping for '{header}' targets unknown field '{target}'", [target]
                )
            return ColumnMatch(header, index, target, confidence, layer.source)

        candidates = self.score_header(header)
        if not candidates:
            return ColumnMatch(header, index, None, 0, "none")

        field_name, confidence, pattern = candidates[0]
        if field_name in NUMERIC_FIELDS and not self._samples_numeric(sample_rows, index):
            confidence -= NON_NUMERIC_PENALTY
        if confidence < MIN_CONFIDENCE:
            return ColumnMatch(header, index, None, 0, "none", pattern)
        source = "exact" if confidence == EXACT_CONFIDENCE else "pattern"
        return ColumnMatch(header, index, field_name, confidence, source, pattern)

    @staticmethod
    def _samples_numeric(sample_rows: Sequence[Sequence[Any]], index: int) -> bool:
        """False only when samples exist and none of them parse as a number."""
        values = [row[index] for row in sample_rows if index < len(row) and row[index] is not None]
        if not values:
            return True
        return any(parse_decimal(v) is not None or _looks_like_plan(v) for v in values)

    def validate(self, result: MappingResult, required_fields: Iterable[str]) -> None:
        """Raise ValidationError when a required field has no column."""
        missing = result.missing_required(required_fields)
        if missing:
            raise ValidationError(
                f"Missing required column mappings: {', '.join(missing)}", missing
            )


def _looks_like_plan(value: Any) -> bool:
    # "1+23" and "10k" are numeric in spirit
    text = str(value).strip().lower()
    return bool(re.match(r"^\d+\s*\+\s*\d+$", text) or re.match(r"^\d+(\.\d+)?\s*k\b", text))

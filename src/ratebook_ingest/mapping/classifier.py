from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import httpx
import structlog

from ..config.settings import get_settings
from .column_mapper import OverrideLayer
from .patterns import CANONICAL_FIELDS

logger = structlog.get_logger()


@dataclass
class ClassifierSuggestion:
    mappings: Dict[str, str]
    confidences: Dict[str, int] = field(default_factory=dict)
    provider_name: Optional[str] = None

    def as_layer(self, min_confidence: int) -> OverrideLayer:
        """Keep only canonical, sufficiently confident suggestions."""
        kept = {
            header: target
            for header, target in self.mappings.items()
            if target in CANONICAL_FIELDS and self.confidences.get(header, 0) >= min_confidence
        }
        return OverrideLayer(
            source="classifier",
            mappings=kept,
            confidences={h: self.confidences[h] for h in kept},
        )


class ColumnClassifier(ABC):
    """External collaborator that suggests column mappings."""

    @abstractmethod
    def suggest(self, headers: Sequence[str], sample_rows: Sequence[Sequence[Any]]) -> Optional[ClassifierSuggestion]:
        """Return suggested mappings, or None when no suggestion is available."""
        pass


class HttpColumnClassifier(ColumnClassifier):
    """Client for a column-classification service reachable over HTTP."""

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None,
                 transport: Optional[httpx.BaseTransport] = None):
        settings = get_settings()
        self.base_url = (base_url or settings.classifier_url or "").rstrip("/")
        self.timeout = httpx.Timeout(timeout or settings.classifier_timeout)
        self.transport = transport

    def suggest(self, headers: Sequence[str], sample_rows: Sequence[Sequence[Any]]) -> Optional[ClassifierSuggestion]:
        payload = {
            "headers": [str(h) if h is not None else "" for h in headers],
            "sample_rows": [[None if v is None else str(v) for v in row] for row in sample_rows[:5]],
            "fields": sorted(CANONICAL_FIELDS),
        }
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(f"{self.base_url}/classify/columns", json=payload)
                response.raise_for_status()
                result = response.json()
        except httpx.HTTPStatusError as e:
            logger.warning("Column classifier API error",
                           status_code=e.response.status_code,
                           header_count=len(headers),
                           error=str(e))
            return None
        except httpx.RequestError as e:
            logger.warning("Column classifier connection error",
                           header_count=len(headers),
                           error=str(e))
            return None

        mappings: Dict[str, str] = {}
        confidences: Dict[str, int] = {}
        for item in result.get("mappings", []):
            header, target = item.get("header"), item.get("field")
            if not header or not target:
                continue
            mappings[header] = target
            confidences[header] = int(item.get("confidence", 0))

        logger.info("Column classifier suggestions received",
                    header_count=len(headers),
                    suggested=len(mappings),
                    provider_name=result.get("provider_name"))
        return ClassifierSuggestion(
            mappings=mappings,
            confidences=confidences,
            provider_name=result.get("provider_name"),
        )


def get_classifier() -> Optional[ColumnClassifier]:
    """Configured classifier, or None to run heuristic-only."""
    if get_settings().classifier_url:
        return HttpColumnClassifier()
    return None

from .patterns import FIELD_PATTERNS, CANONICAL_FIELDS
from .column_mapper import ColumnMapper, ColumnMatch, MappingResult, OverrideLayer
from .classifier import ColumnClassifier, HttpColumnClassifier, ClassifierSuggestion, get_classifier
from .store import ProviderMappingStore

__all__ = [
    "FIELD_PATTERNS",
    "CANONICAL_FIELDS",
    "ColumnMapper",
    "ColumnMatch",
    "MappingResult",
    "OverrideLayer",
    "ColumnClassifier",
    "HttpColumnClassifier",
    "ClassifierSuggestion",
    "get_classifier",
    "ProviderMappingStore",
]

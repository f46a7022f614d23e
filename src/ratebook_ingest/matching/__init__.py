from .catalog import CatalogReader, SqlCatalog, VehicleFilter
from .vehicle_matcher import VehicleMatcher, MatchResult, source_key
from .workflow import MatchWorkflow, Descriptor, Resolution

__all__ = [
    "CatalogReader",
    "SqlCatalog",
    "VehicleFilter",
    "VehicleMatcher",
    "MatchResult",
    "source_key",
    "MatchWorkflow",
    "Descriptor",
    "Resolution",
]

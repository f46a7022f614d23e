from .base import Base
from .models import (
    ImportStatus, MatchStatus, JobStatus,
    Vehicle, RatebookImport, ProviderRate, VehicleCapMatch, ProviderMapping, ImportJob,
)
from .session import (
    make_engine, make_session_factory, get_engine, get_session_factory,
    get_session, get_db_session, init_db,
)

__all__ = [
    "Base",
    "ImportStatus",
    "MatchStatus",
    "JobStatus",
    "Vehicle",
    "RatebookImport",
    "ProviderRate",
    "VehicleCapMatch",
    "ProviderMapping",
    "ImportJob",
    "make_engine",
    "make_session_factory",
    "get_engine",
    "get_session_factory",
    "get_session",
    "get_db_session",
    "init_db",
]

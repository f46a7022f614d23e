"""Service wiring for the HTTP layer; everything hangs off ``app.state``."""

from typing import Optional

from fastapi import Request
from sqlalchemy.orm import sessionmaker

from ..config.settings import get_settings
from ..imports.batch_manager import ImportBatchManager
from ..imports.importer import RatebookImporter
from ..imports.queue import ImportQueue
from ..mapping.classifier import ColumnClassifier
from ..mapping.store import ProviderMappingStore
from ..matching.catalog import SqlCatalog
from ..matching.vehicle_matcher import VehicleMatcher
from ..matching.workflow import MatchWorkflow
from ..repositories.rates import RateRepository


def _session_factory(request: Request) -> Optional[sessionmaker]:
    return request.app.state.session_factory


def get_batch_manager(request: Request) -> ImportBatchManager:
    return ImportBatchManager(_session_factory(request))


def get_importer(request: Request) -> RatebookImporter:
    classifier: Optional[ColumnClassifier] = request.app.state.classifier
    return RatebookImporter(_session_factory(request), classifier=classifier)


def get_queue(request: Request) -> ImportQueue:
    return ImportQueue(_session_factory(request))


def get_workflow(request: Request) -> MatchWorkflow:
    factory = _session_factory(request)
    return MatchWorkflow(VehicleMatcher(SqlCatalog(factory), get_settings()), factory)


def get_mapping_store(request: Request) -> ProviderMappingStore:
    return ProviderMappingStore(_session_factory(request))


def get_rate_repository(request: Request) -> RateRepository:
    return RateRepository(_session_factory(request))

"""Canonical vehicle catalog access."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from ..db.models import Vehicle
from ..db.session import get_db_session

logger = structlog.get_logger()


@dataclass
class VehicleFilter:
    manufacturer: str
    model: Optional[str] = None
    variant_prefix: Optional[str] = None
    limit: int = 50


class CatalogReader(ABC):
    """Interface for reading the canonical vehicle catalog."""

    @abstractmethod
    def lookup_vehicles(self, vehicle_filter: VehicleFilter) -> List[Vehicle]:
        """Vehicles matching the filter, ordered by CAP code."""
        pass

    @abstractmethod
    def lookup_vehicle_by_cap_code(self, cap_code: str) -> Optional[Vehicle]:
        pass

    def lookup_by_cap_codes(self, cap_codes: Iterable[str]) -> Dict[str, Vehicle]:
        found = {}
        for code in set(cap_codes):
            vehicle = self.lookup_vehicle_by_cap_code(code)
            if vehicle is not None:
                found[code] = vehicle
        return found


class SqlCatalog(CatalogReader):
    """Catalog backed by the ``vehicles`` table."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory

    def lookup_vehicles(self, vehicle_filter: VehicleFilter) -> List[Vehicle]:
        stmt = select(Vehicle).where(
            func.lower(Vehicle.manufacturer) == vehicle_filter.manufacturer.strip().lower()
        )
        if vehicle_filter.model:
            stmt = stmt.where(Vehicle.model.icontains(vehicle_filter.model.strip(), autoescape=True))
        if vehicle_filter.variant_prefix:
            stmt = stmt.where(Vehicle.variant.icontains(vehicle_filter.variant_prefix.strip(), autoescape=True))
        stmt = stmt.order_by(Vehicle.cap_code).limit(vehicle_filter.limit)

        with get_db_session(self.session_factory) as session:
            return list(session.scalars(stmt))

    def lookup_vehicle_by_cap_code(self, cap_code: str) -> Optional[Vehicle]:
        with get_db_session(self.session_factory) as session:
            return session.scalar(select(Vehicle).where(Vehicle.cap_code == cap_code.strip()))

    def lookup_by_cap_codes(self, cap_codes: Iterable[str]) -> Dict[str, Vehicle]:
        """One query for every distinct CAP code in a chunk."""
        codes = sorted({c.strip() for c in cap_codes if c})
        if not codes:
            return {}
        with get_db_session(self.session_factory) as session:
            vehicles = session.scalars(select(Vehicle).where(Vehicle.cap_code.in_(codes)))
            return {v.cap_code: v for v in vehicles}

    def create_vehicle(self, cap_code: str, manufacturer: str, model: str,
                       variant: Optional[str] = None, **attributes) -> Vehicle:
        """Add a catalog entry for a CAP code a provider supplies but the catalog lacks."""
        with get_db_session(self.session_factory) as session:
            existing = session.scalar(select(Vehicle).where(Vehicle.cap_code == cap_code))
            if existing is not None:
                return existing
            vehicle = Vehicle(
                cap_code=cap_code,
                manufacturer=manufacturer,
                model=model,
                variant=variant,
                created_at=datetime.utcnow(),
                **{k: v for k, v in attributes.items() if v is not None and hasattr(Vehicle, k)},
            )
            session.add(vehicle)
            session.flush()
            logger.info("Catalog vehicle created", cap_code=cap_code, manufacturer=manufacturer, model=model)
            return vehicle

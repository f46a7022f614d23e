from collections import defaultdict
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from ..db.models import ProviderRate, RatebookImport, Vehicle
from ..db.session import get_db_session
from ..exceptions import BatchNotFound
from ..imports.batch_manager import batch_to_dict
from ..scoring.value_score import score_label


class RateRepository:
    """Read side over imported rates, scoped to latest batches by default."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory

    def latest_rates(self,
                     provider: Optional[str] = None,
                     contract_type: Optional[str] = None,
                     manufacturer: Optional[str] = None,
                     min_rental: Optional[int] = None,
                     max_rental: Optional[int] = None,
                     min_score: Optional[int] = None,
                     include_history: bool = False,
                     limit: int = 100,
                     offset: int = 0) -> List[Dict[str, Any]]:
        stmt = select(ProviderRate, RatebookImport.batch_id).join(
            RatebookImport, ProviderRate.import_id == RatebookImport.id
        )
        if not include_history:
            stmt = stmt.where(RatebookImport.is_latest.is_(True))
        if provider:
            stmt = stmt.where(ProviderRate.provider_code == provider.lower())
        if contract_type:
            stmt = stmt.where(ProviderRate.contract_type == contract_type.upper())
        if manufacturer:
            stmt = stmt.where(ProviderRate.manufacturer.ilike(manufacturer.strip()))
        if min_rental is not None:
            stmt = stmt.where(ProviderRate.total_rental >= min_rental)
        if max_rental is not None:
            stmt = stmt.where(ProviderRate.total_rental <= max_rental)
        if min_score is not None:
            stmt = stmt.where(ProviderRate.score >= min_score)
        stmt = stmt.order_by(ProviderRate.total_rental, ProviderRate.id).limit(limit).offset(offset)

        with get_db_session(self.session_factory) as session:
            return [self._rate_to_dict(rate, batch_id) for rate, batch_id in session.execute(stmt)]

    def compare_by_cap_code(self, cap_code: str) -> Dict[str, Any]:
        """Latest rates for one vehicle across every provider, cheapest first."""
        stmt = (
            select(ProviderRate, RatebookImport.batch_id)
            .join(RatebookImport, ProviderRate.import_id == RatebookImport.id)
            .where(RatebookImport.is_latest.is_(True), ProviderRate.cap_code == cap_code)
            .order_by(ProviderRate.total_rental, ProviderRate.provider_code)
        )
        with get_db_session(self.session_factory) as session:
            rates = [self._rate_to_dict(rate, batch_id) for rate, batch_id in session.execute(stmt)]
            vehicle = session.scalar(select(Vehicle).where(Vehicle.cap_code == cap_code))
            vehicle_info = None
            if vehicle is not None:
                vehicle_info = {
                    "cap_code": vehicle.cap_code,
                    "manufacturer": vehicle.manufacturer,
                    "model": vehicle.model,
                    "variant": vehicle.variant,
                    "p11d": vehicle.p11d,
                }
        return {
            "cap_code": cap_code,
            "vehicle": vehicle_info,
            "providers": sorted({r["provider_code"] for r in rates}),
            "cheapest": rates[0] if rates else None,
            "rates": rates,
        }

    def coverage_gaps(self, providers: Optional[Sequence[str]] = None) -> List[Dict[str, Any]]:
        """CAP codes some providers' latest batches price and others do not."""
        stmt = (
            select(ProviderRate.cap_code, ProviderRate.provider_code)
            .join(RatebookImport, ProviderRate.import_id == RatebookImport.id)
            .where(RatebookImport.is_latest.is_(True), ProviderRate.cap_code.is_not(None))
            .distinct()
        )
        with get_db_session(self.session_factory) as session:
            pairs = session.execute(stmt).all()

        wanted = sorted({p.lower() for p in providers}) if providers else sorted({p for _, p in pairs})
        coverage: Dict[str, set] = defaultdict(set)
        for cap_code, provider in pairs:
            if provider in wanted:
                coverage[cap_code].add(provider)

        gaps = []
        for cap_code in sorted(coverage):
            present = coverage[cap_code]
            missing = [p for p in wanted if p not in present]
            if missing:
                gaps.append({"cap_code": cap_code, "present": sorted(present), "missing": missing})
        return gaps

    def list_imports(self, provider: Optional[str] = None, contract_type: Optional[str] = None,
                     limit: int = 50) -> List[Dict[str, Any]]:
        stmt = select(RatebookImport).order_by(RatebookImport.created_at.desc(), RatebookImport.id.desc())
        if provider:
            stmt = stmt.where(RatebookImport.provider_code == provider.lower())
        if contract_type:
            stmt = stmt.where(RatebookImport.contract_type == contract_type.upper())
        with get_db_session(self.session_factory) as session:
            summaries = []
            for record in session.scalars(stmt.limit(limit)):
                summary = batch_to_dict(record)
                summary.pop("error_log")
                summaries.append(summary)
            return summaries

    def get_import(self, batch_id: str) -> Dict[str, Any]:
        """Full batch record including the stored error log."""
        with get_db_session(self.session_factory) as session:
            record = session.scalar(select(RatebookImport).where(RatebookImport.batch_id == batch_id))
            if record is None:
                raise BatchNotFound(f"Import batch {batch_id} not found")
            return batch_to_dict(record)

    @staticmethod
    def _rate_to_dict(rate: ProviderRate, batch_id: str) -> Dict[str, Any]:
        return {
            "id": rate.id,
            "batch_id": batch_id,
            "cap_code": rate.cap_code,
            "vehicle_id": rate.vehicle_id,
            "provider_code": rate.provider_code,
            "contract_type": rate.contract_type,
            "manufacturer": rate.manufacturer,
            "model": rate.model,
            "variant": rate.variant,
            "term": rate.term,
            "annual_mileage": rate.annual_mileage,
            "payment_plan": rate.payment_plan,
            "initial_months": rate.initial_months,
            "low_confidence_plan": rate.low_confidence_plan,
            "total_rental": rate.total_rental,
            "p11d": rate.p11d,
            "is_maintained": rate.is_maintained,
            "score": rate.score,
            "score_label": score_label(rate.score) if rate.score is not None else None,
        }

"""
Human review workflow for vehicle CAP matches.

    pending --confirm--> confirmed
    pending --reject---> rejected      (suggestion cleared)
    pending --manual---> manual        (confidence 100)
    pending --rematch--> pending       (suggestion re-run)
    confirmed | rejected | manual --reset--> pending

Imports resolve descriptors through ``resolve_keys``. Only unseen
descriptors are run through the matcher; confirmed and manual matches are
reused, pending ones keep their stored suggestion and rejected ones attach
nothing.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ..config.settings import Settings, get_settings
from ..db.models import MatchStatus, ProviderRate, Vehicle, VehicleCapMatch
from ..db.session import get_db_session
from ..exceptions import InvalidMatchTransition, MatchNotFound, UnknownCapCode
from ..utils.logging import matching_logger
from .vehicle_matcher import MANUAL, MatchResult, VehicleMatcher

logger = structlog.get_logger()

REUSABLE = (MatchStatus.CONFIRMED, MatchStatus.MANUAL)
RESETTABLE = (MatchStatus.CONFIRMED, MatchStatus.REJECTED, MatchStatus.MANUAL)


@dataclass
class Descriptor:
    manufacturer: str
    model: str
    variant: Optional[str]
    list_price: Optional[int] = None


@dataclass
class Resolution:
    cap_code: Optional[str]
    vehicle_id: Optional[int]
    status: MatchStatus
    confidence: int = 0


class MatchWorkflow:
    def __init__(self, matcher: VehicleMatcher,
                 session_factory: Optional[sessionmaker] = None,
                 settings: Optional[Settings] = None):
        self.matcher = matcher
        self.session_factory = session_factory
        self.settings = settings or get_settings()

    # --- import-time resolution ---

    def resolve_keys(self, provider_code: str,
                     descriptors: Dict[str, Descriptor]) -> Dict[str, Resolution]:
        """Resolve every distinct descriptor of a chunk in one pass."""
        if not descriptors:
            return {}
        try:
            return self._resolve(provider_code, descriptors)
        except IntegrityError:
            # a concurrent import inserted one of the keys first
            logger.warning("Match upsert conflict, retrying", provider_code=provider_code)
            return self._resolve(provider_code, descriptors)

    def _resolve(self, provider_code: str,
                 descriptors: Dict[str, Descriptor]) -> Dict[str, Resolution]:
        keys = list(descriptors)
        with get_db_session(self.session_factory) as session:
            existing = {
                m.source_key: (m.match_status, m.cap_code, m.vehicle_id, m.match_confidence)
                for m in session.scalars(select(VehicleCapMatch).where(VehicleCapMatch.source_key.in_(keys)))
            }

        resolutions: Dict[str, Resolution] = {}
        evaluated: Dict[str, MatchResult] = {}
        reused = 0
        for key in keys:
            known = existing.get(key)
            if known and known[0] in REUSABLE:
                resolutions[key] = Resolution(known[1], known[2], known[0], known[3])
                reused += 1
            elif known and known[0] == MatchStatus.REJECTED:
                resolutions[key] = Resolution(None, None, MatchStatus.REJECTED)
            elif known:
                # pending keeps its stored suggestion until an explicit rematch
                status, cap_code, vehicle_id, confidence = known
                attach = bool(cap_code) and (confidence or 0) >= self.settings.exact_match_floor
                resolutions[key] = Resolution(cap_code if attach else None,
                                              vehicle_id if attach else None,
                                              status, confidence or 0)
            else:
                d = descriptors[key]
                evaluated[key] = self.matcher.find_match(d.manufacturer, d.model, d.variant, d.list_price)

        if evaluated:
            now = datetime.utcnow()
            with get_db_session(self.session_factory) as session:
                for key, result in evaluated.items():
                    d = descriptors[key]
                    record = VehicleCapMatch(
                        source_provider=provider_code,
                        source_key=key,
                        manufacturer=d.manufacturer,
                        model=d.model,
                        variant=d.variant,
                        p11d=d.list_price,
                        match_status=MatchStatus.PENDING,
                        created_at=now,
                    )
                    session.add(record)
                    self._apply_suggestion(record, result, now)
                    attach = result.matched and result.confidence >= self.settings.exact_match_floor
                    resolutions[key] = Resolution(
                        result.cap_code if attach else None,
                        result.vehicle.id if attach else None,
                        MatchStatus.PENDING,
                        result.confidence,
                    )

        matching_logger.log_batch_result(
            provider_code=provider_code,
            keys=len(keys),
            matched=sum(1 for r in resolutions.values() if r.cap_code),
            reused=reused,
        )
        return resolutions

    @staticmethod
    def _apply_suggestion(record: VehicleCapMatch, result: MatchResult, now: datetime) -> None:
        vehicle = result.vehicle
        record.cap_code = result.cap_code
        record.vehicle_id = vehicle.id if vehicle else None
        record.matched_manufacturer = vehicle.manufacturer if vehicle else None
        record.matched_model = vehicle.model if vehicle else None
        record.matched_variant = vehicle.variant if vehicle else None
        record.matched_p11d = vehicle.p11d if vehicle else None
        record.match_confidence = result.confidence
        record.match_method = result.method
        record.matched_at = now if vehicle else None

    # --- human actions ---

    def _load(self, session: Session, match_id: int) -> VehicleCapMatch:
        record = session.get(VehicleCapMatch, match_id)
        if record is None:
            raise MatchNotFound(f"Match {match_id} not found")
        return record

    @staticmethod
    def _require(record: VehicleCapMatch, allowed: Tuple[MatchStatus, ...], action: str) -> None:
        if record.match_status not in allowed:
            raise InvalidMatchTransition(record.id, record.match_status.value, action)

    def confirm(self, match_id: int, user: Optional[str] = None) -> Dict[str, Any]:
        with get_db_session(self.session_factory) as session:
            record = self._load(session, match_id)
            self._require(record, (MatchStatus.PENDING,), "confirm")
            if not record.cap_code:
                raise InvalidMatchTransition(record.id, record.match_status.value, "confirm without a CAP code")
            self._transition(record, MatchStatus.CONFIRMED, user)
            record.confirmed_at = datetime.utcnow()
            record.confirmed_by = user
            self._backfill(session, record)
            return self._to_dict(record)

    def reject(self, match_id: int, user: Optional[str] = None) -> Dict[str, Any]:
        with get_db_session(self.session_factory) as session:
            record = self._load(session, match_id)
            self._require(record, (MatchStatus.PENDING,), "reject")
            rejected_cap = record.cap_code
            self._apply_suggestion(record, MatchResult.no_match(), datetime.utcnow())
            record.match_method = None
            self._transition(record, MatchStatus.REJECTED, user)
            record.confirmed_at = datetime.utcnow()
            record.confirmed_by = user
            if rejected_cap:
                session.execute(
                    update(ProviderRate)
                    .where(ProviderRate.source_key == record.source_key,
                           ProviderRate.cap_code == rejected_cap)
                    .values(cap_code=None, vehicle_id=None)
                )
            return self._to_dict(record)

    def manual(self, match_id: int, cap_code: str, user: Optional[str] = None) -> Dict[str, Any]:
        with get_db_session(self.session_factory) as session:
            record = self._load(session, match_id)
            self._require(record, (MatchStatus.PENDING,), "manually match")
            vehicle = session.scalar(select(Vehicle).where(Vehicle.cap_code == cap_code.strip()))
            if vehicle is None:
                raise UnknownCapCode(f"CAP code {cap_code} not found in catalog")
            now = datetime.utcnow()
            self._apply_suggestion(record, MatchResult(vehicle.cap_code, vehicle, 100, MANUAL), now)
            self._transition(record, MatchStatus.MANUAL, user)
            record.confirmed_at = now
            record.confirmed_by = user
            self._backfill(session, record)
            return self._to_dict(record)

    def rematch(self, match_id: int) -> Dict[str, Any]:
        with get_db_session(self.session_factory) as session:
            record = self._load(session, match_id)
            self._require(record, (MatchStatus.PENDING,), "rematch")
            descriptor = (record.manufacturer, record.model, record.variant, record.p11d)

        result = self.matcher.find_match(*descriptor)

        with get_db_session(self.session_factory) as session:
            record = self._load(session, match_id)
            self._require(record, (MatchStatus.PENDING,), "rematch")
            now = datetime.utcnow()
            self._apply_suggestion(record, result, now)
            record.updated_at = now
            return self._to_dict(record)

    def reset_to_pending(self, match_id: int, user: Optional[str] = None) -> Dict[str, Any]:
        """Reopen a reviewed match; the suggestion is kept for re-confirmation."""
        with get_db_session(self.session_factory) as session:
            record = self._load(session, match_id)
            self._require(record, RESETTABLE, "reset")
            self._transition(record, MatchStatus.PENDING, user)
            record.confirmed_at = None
            record.confirmed_by = None
            return self._to_dict(record)

    def _transition(self, record: VehicleCapMatch, to_status: MatchStatus, user: Optional[str]) -> None:
        from_status = record.match_status
        record.match_status = to_status
        record.updated_at = datetime.utcnow()
        matching_logger.log_status_change(
            match_id=record.id,
            from_status=from_status.value,
            to_status=to_status.value,
            user=user,
        )

    @staticmethod
    def _backfill(session: Session, record: VehicleCapMatch) -> int:
        """Point every imported rate of this descriptor at the reviewed CAP code."""
        result = session.execute(
            update(ProviderRate)
            .where(ProviderRate.source_key == record.source_key)
            .where(or_(ProviderRate.cap_code.is_(None), ProviderRate.cap_code != record.cap_code))
            .values(cap_code=record.cap_code, vehicle_id=record.vehicle_id)
        )
        if result.rowcount:
            logger.info("Rates backfilled", match_id=record.id, cap_code=record.cap_code, rates=result.rowcount)
        return result.rowcount

    # --- review queries ---

    def get(self, match_id: int) -> Dict[str, Any]:
        with get_db_session(self.session_factory) as session:
            return self._to_dict(self._load(session, match_id))

    def list_matches(self,
                     status: Optional[str] = None,
                     provider: Optional[str] = None,
                     search: Optional[str] = None,
                     has_match: Optional[bool] = None,
                     min_confidence: Optional[int] = None,
                     max_confidence: Optional[int] = None,
                     limit: int = 100,
                     offset: int = 0) -> List[Dict[str, Any]]:
        stmt = select(VehicleCapMatch)
        if status:
            stmt = stmt.where(VehicleCapMatch.match_status == MatchStatus(status))
        if provider:
            stmt = stmt.where(VehicleCapMatch.source_provider == provider.lower())
        if search:
            term = search.strip()
            stmt = stmt.where(or_(
                VehicleCapMatch.manufacturer.icontains(term, autoescape=True),
                VehicleCapMatch.model.icontains(term, autoescape=True),
                VehicleCapMatch.variant.icontains(term, autoescape=True),
                VehicleCapMatch.cap_code.icontains(term, autoescape=True),
            ))
        if has_match is True:
            stmt = stmt.where(VehicleCapMatch.cap_code.is_not(None))
        elif has_match is False:
            stmt = stmt.where(VehicleCapMatch.cap_code.is_(None))
        if min_confidence is not None:
            stmt = stmt.where(VehicleCapMatch.match_confidence >= min_confidence)
        if max_confidence is not None:
            stmt = stmt.where(VehicleCapMatch.match_confidence <= max_confidence)
        stmt = stmt.order_by(VehicleCapMatch.match_confidence.desc(), VehicleCapMatch.id).limit(limit).offset(offset)

        with get_db_session(self.session_factory) as session:
            return [self._to_dict(m) for m in session.scalars(stmt)]

    def match_stats(self) -> Dict[str, Any]:
        with get_db_session(self.session_factory) as session:
            rows = session.execute(
                select(VehicleCapMatch.match_status, func.count(VehicleCapMatch.id))
                .group_by(VehicleCapMatch.match_status)
            ).all()
            matched = session.scalar(
                select(func.count(VehicleCapMatch.id)).where(VehicleCapMatch.cap_code.is_not(None))
            )
            average = session.scalar(
                select(func.avg(VehicleCapMatch.match_confidence)).where(VehicleCapMatch.cap_code.is_not(None))
            )
        by_status = {s.value: 0 for s in MatchStatus}
        for status, count in rows:
            by_status[status.value] = count
        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "with_cap_code": matched or 0,
            "average_confidence": round(float(average), 1) if average is not None else None,
        }

    @staticmethod
    def _to_dict(record: VehicleCapMatch) -> Dict[str, Any]:
        return {
            "id": record.id,
            "source_provider": record.source_provider,
            "source_key": record.source_key,
            "manufacturer": record.manufacturer,
            "model": record.model,
            "variant": record.variant,
            "p11d": record.p11d,
            "cap_code": record.cap_code,
            "vehicle_id": record.vehicle_id,
            "matched_manufacturer": record.matched_manufacturer,
            "matched_model": record.matched_model,
            "matched_variant": record.matched_variant,
            "matched_p11d": record.matched_p11d,
            "match_confidence": record.match_confidence,
            "match_status": record.match_status.value,
            "match_method": record.match_method,
            "matched_at": record.matched_at,
            "confirmed_at": record.confirmed_at,
            "confirmed_by": record.confirmed_by,
        }

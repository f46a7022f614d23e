"""
Import Batch Manager

Owns the RatebookImport lifecycle:

    start_import   content hash, duplicate check, ``processing`` record
    process_rows   match, score and insert parsed rows in fixed-size chunks,
                   persisting running totals after every chunk
    finalize       ``completed`` or ``failed``; a completed batch takes the
                   latest pointer for its (provider, contract type)
    abort          stop a running import, leaving it ``failed``

A chunk whose insert fails is counted as failed as a whole; transient
database errors are retried a bounded number of times first.
"""

import hashlib
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

from sqlalchemy import insert, select, text
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..config.settings import Settings, get_settings
from ..db.models import ImportStatus, ProviderRate, RatebookImport
from ..db.session import get_db_session
from ..exceptions import BatchNotFound, ChunkPersistError, DuplicateFileError, ImportAborted
from ..matching.catalog import SqlCatalog
from ..matching.vehicle_matcher import VehicleMatcher, source_key
from ..matching.workflow import Descriptor, MatchWorkflow, Resolution
from ..parsing.models import RateRow
from ..profiles.dsl import ProviderProfile
from ..scoring.value_score import score
from ..utils.logging import import_logger

TRANSIENT_ERRORS = (OperationalError, TimeoutError, ConnectionError)

# fixed pool; pairs sharing a stripe only serialize with each other
LATEST_LOCK_STRIPES = 64
_latest_locks: List[threading.Lock] = [threading.Lock() for _ in range(LATEST_LOCK_STRIPES)]


def _latest_lock(provider_code: str, contract_type: str) -> threading.Lock:
    return _latest_locks[hash((provider_code, contract_type)) % LATEST_LOCK_STRIPES]


def hash_content(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def make_batch_id(provider_code: str, contract_type: str) -> str:
    stamp = datetime.utcnow().strftime("%Y%m%dT%H%M%S")
    return f"{provider_code}_{contract_type}_{stamp}_{uuid.uuid4().hex[:8]}"


def _json_safe(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def batch_to_dict(record: RatebookImport) -> Dict[str, Any]:
    return {
        "id": record.id,
        "batch_id": record.batch_id,
        "provider_code": record.provider_code,
        "contract_type": record.contract_type,
        "file_name": record.file_name,
        "file_hash": record.file_hash,
        "status": record.status.value,
        "is_latest": record.is_latest,
        "total_rows": record.total_rows,
        "success_rows": record.success_rows,
        "error_rows": record.error_rows,
        "unique_cap_codes": record.unique_cap_codes,
        "error_log": list(record.error_log or []),
        "details": dict(record.details or {}),
        "superseded_import_id": record.superseded_import_id,
        "started_at": record.started_at,
        "completed_at": record.completed_at,
        "created_at": record.created_at,
    }


@dataclass
class ChunkOutcome:
    inserted: int = 0
    cap_codes: Set[str] = field(default_factory=set)
    low_confidence_plans: List[str] = field(default_factory=list)


class ImportBatchManager:
    def __init__(self,
                 session_factory: Optional[sessionmaker] = None,
                 workflow: Optional[MatchWorkflow] = None,
                 catalog: Optional[SqlCatalog] = None,
                 settings: Optional[Settings] = None,
                 chunk_size: Optional[int] = None):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.catalog = catalog or SqlCatalog(session_factory)
        self.workflow = workflow or MatchWorkflow(
            VehicleMatcher(self.catalog, self.settings), session_factory, self.settings
        )
        self.chunk_size = chunk_size or self.settings.chunk_size

    # --- start ---

    def check_duplicate(self, provider_code: str, file_hash: str) -> Optional[Dict[str, Any]]:
        """The completed import of this content for this provider, if any."""
        with get_db_session(self.session_factory) as session:
            prior = session.scalar(
                select(RatebookImport)
                .where(RatebookImport.provider_code == provider_code.lower(),
                       RatebookImport.file_hash == file_hash,
                       RatebookImport.status == ImportStatus.COMPLETED)
                .order_by(RatebookImport.created_at)
                .limit(1)
            )
            return batch_to_dict(prior) if prior is not None else None

    def start_import(self,
                     provider_code: str,
                     contract_type: str,
                     file_name: str,
                     content: bytes,
                     force: bool = False,
                     details: Optional[Dict[str, Any]] = None) -> str:
        """Create the ``processing`` batch record and return its batch id.

        Raises DuplicateFileError when this provider already completed an
        import of identical content, unless ``force`` is set. Failed or
        unfinished imports of the same content never block.
        """
        provider_code = provider_code.lower()
        contract_type = contract_type.upper()
        file_hash = hash_content(content)

        if not force:
            prior = self.check_duplicate(provider_code, file_hash)
            if prior is not None:
                raise DuplicateFileError(prior["batch_id"], prior["created_at"], file_hash)

        batch_id = make_batch_id(provider_code, contract_type)
        now = datetime.utcnow()
        with get_db_session(self.session_factory) as session:
            session.add(RatebookImport(
                batch_id=batch_id,
                provider_code=provider_code,
                contract_type=contract_type,
                file_name=file_name,
                file_hash=file_hash,
                status=ImportStatus.PROCESSING,
                is_latest=False,
                error_log=[],
                details=details or {},
                started_at=now,
                created_at=now,
            ))
        return batch_id

    # --- progress ---

    def _load(self, session: Session, batch_id: str, for_update: bool = False) -> RatebookImport:
        stmt = select(RatebookImport).where(RatebookImport.batch_id == batch_id)
        if for_update:
            stmt = stmt.with_for_update()
        record = session.scalar(stmt)
        if record is None:
            raise BatchNotFound(f"Import batch {batch_id} not found")
        return record

    def _append_errors(self, record: RatebookImport, messages: Iterable[str]) -> None:
        room = self.settings.error_log_limit - len(record.error_log or [])
        if room > 0:
            record.error_log = list(record.error_log or []) + list(messages)[:room]

    def record_parse_errors(self, batch_id: str, errors: Sequence[Any]) -> None:
        """Count rows that never became RateRows against the batch."""
        if not errors:
            return
        with get_db_session(self.session_factory) as session:
            record = self._load(session, batch_id)
            record.total_rows += len(errors)
            record.error_rows += len(errors)
            self._append_errors(record, (str(e) for e in errors))

    def update_details(self, batch_id: str, **details: Any) -> None:
        with get_db_session(self.session_factory) as session:
            record = self._load(session, batch_id)
            record.details = {**(record.details or {}), **details}

    def process_rows(self,
                     batch_id: str,
                     rows: Sequence[RateRow],
                     profile: Optional[ProviderProfile] = None,
                     cancel_event: Optional[threading.Event] = None) -> Dict[str, Any]:
        """Persist rows chunk by chunk; returns the batch's running totals.

        Raises ImportAborted when the batch is aborted between chunks.
        """
        with get_db_session(self.session_factory) as session:
            record = self._load(session, batch_id)
            provider_code, contract_type = record.provider_code, record.contract_type

        cap_codes: Set[str] = set()
        for chunk_index, start in enumerate(range(0, len(rows), self.chunk_size)):
            chunk = rows[start:start + self.chunk_size]
            if cancel_event is not None and cancel_event.is_set():
                self.abort(batch_id, "cancelled")
            self._ensure_running(batch_id)

            attempts = 0
            error: Optional[ChunkPersistError] = None
            outcome: Optional[ChunkOutcome] = None
            while True:
                attempts += 1
                try:
                    outcome = self._persist_chunk(batch_id, provider_code, contract_type,
                                                  chunk, profile, cap_codes)
                    break
                except TRANSIENT_ERRORS as e:
                    if attempts >= self.settings.chunk_max_attempts:
                        error = ChunkPersistError(chunk_index, len(chunk), f"{type(e).__name__}: {e}")
                        break
                    time.sleep(self.settings.chunk_retry_backoff_seconds * attempts)
                except SQLAlchemyError as e:
                    error = ChunkPersistError(chunk_index, len(chunk), f"{type(e).__name__}: {e}")
                    break

            if error is not None:
                self._record_chunk_failure(batch_id, error)
            import_logger.log_chunk_result(
                batch_id=batch_id,
                chunk_index=chunk_index,
                chunk_size=len(chunk),
                inserted=outcome.inserted if outcome else 0,
                attempts=attempts,
                error=str(error) if error else None,
            )

        return self.get_batch(batch_id)

    def _ensure_running(self, batch_id: str) -> None:
        with get_db_session(self.session_factory) as session:
            record = self._load(session, batch_id)
            if record.status != ImportStatus.PROCESSING:
                raise ImportAborted(f"Import batch {batch_id} is {record.status.value}")

    def _resolve(self, provider_code: str, chunk: Sequence[RateRow],
                 profile: Optional[ProviderProfile]) -> Dict[str, Any]:
        """CAP code and vehicle id per row key: one catalog query and one match pass per chunk."""
        coded = {r.cap_code for r in chunk if r.cap_code}
        vehicles = self.catalog.lookup_by_cap_codes(coded)
        if profile is not None and profile.create_missing_vehicles:
            for row in chunk:
                if row.cap_code and row.cap_code not in vehicles and row.manufacturer and row.model:
                    vehicles[row.cap_code] = self.catalog.create_vehicle(
                        cap_code=row.cap_code,
                        manufacturer=row.manufacturer,
                        model=row.model,
                        variant=row.variant,
                        cap_id=row.cap_id,
                        p11d=row.p11d,
                        otr=row.otr,
                        fuel_type=row.fuel_type,
                        transmission=row.transmission,
                        body_style=row.body_style,
                        co2=row.co2,
                        insurance_group=row.insurance_group,
                        model_year=row.model_year,
                    )

        descriptors: Dict[str, Descriptor] = {}
        for row in chunk:
            if row.cap_code:
                continue
            key = source_key(provider_code, row.manufacturer, row.model, row.variant)
            if key not in descriptors:
                descriptors[key] = Descriptor(row.manufacturer, row.model, row.variant, row.list_price)
        resolutions: Dict[str, Resolution] = self.workflow.resolve_keys(provider_code, descriptors)
        return {"vehicles": vehicles, "resolutions": resolutions}

    def _persist_chunk(self, batch_id: str, provider_code: str, contract_type: str,
                       chunk: Sequence[RateRow], profile: Optional[ProviderProfile],
                       cap_codes: Set[str]) -> ChunkOutcome:
        resolved = self._resolve(provider_code, chunk, profile)
        vehicles, resolutions = resolved["vehicles"], resolved["resolutions"]

        outcome = ChunkOutcome()
        values = []
        for row in chunk:
            key = source_key(provider_code, row.manufacturer, row.model, row.variant)
            cap_code, vehicle_id, catalog_p11d = row.cap_code, None, None
            if row.cap_code and row.cap_code in vehicles:
                vehicle = vehicles[row.cap_code]
                vehicle_id, catalog_p11d = vehicle.id, vehicle.p11d
            elif not row.cap_code and key in resolutions:
                cap_code, vehicle_id = resolutions[key].cap_code, resolutions[key].vehicle_id
            if cap_code:
                outcome.cap_codes.add(cap_code)
            if row.low_confidence_plan:
                outcome.low_confidence_plans.append(row.payment_plan_code)

            data = row.to_dict()
            raw = data.pop("raw") or {}
            data.pop("cap_id")
            data["payment_plan"] = data.pop("payment_plan_code")
            values.append({
                **data,
                "import_id": None,
                "cap_code": cap_code,
                "vehicle_id": vehicle_id,
                "source_key": key,
                "provider_code": provider_code,
                "contract_type": contract_type,
                "raw_data": {k: _json_safe(v) for k, v in raw.items()},
                "score": score(row.total_rental, row.list_price or catalog_p11d, row.term),
                "created_at": datetime.utcnow(),
            })

        with get_db_session(self.session_factory) as session:
            record = self._load(session, batch_id)
            for value in values:
                value["import_id"] = record.id
            if values:
                session.execute(insert(ProviderRate), values)
            cap_codes.update(outcome.cap_codes)
            record.total_rows += len(chunk)
            record.success_rows += len(chunk)
            record.unique_cap_codes = len(cap_codes)
            if outcome.low_confidence_plans:
                self._flag_low_confidence_plans(record, outcome.low_confidence_plans)
        outcome.inserted = len(values)
        return outcome

    def _flag_low_confidence_plans(self, record: RatebookImport, codes: List[str]) -> None:
        details = dict(record.details or {})
        details["low_confidence_plans"] = details.get("low_confidence_plans", 0) + len(codes)
        record.details = details
        self._append_errors(record, [
            f"Warning: {len(codes)} rows with unrecognised payment plan "
            f"({', '.join(sorted(set(codes)))}) defaulted to 1 initial month"
        ])

    def _record_chunk_failure(self, batch_id: str, error: ChunkPersistError) -> None:
        with get_db_session(self.session_factory) as session:
            record = self._load(session, batch_id)
            record.total_rows += error.size
            record.error_rows += error.size
            self._append_errors(record, [str(error)])

    # --- finish ---

    def finalize(self, batch_id: str) -> Dict[str, Any]:
        """Settle the batch status and, when completed, move the latest pointer to it."""
        with get_db_session(self.session_factory) as session:
            record = self._load(session, batch_id)
            provider_code, contract_type = record.provider_code, record.contract_type

        with _latest_lock(provider_code, contract_type):
            with get_db_session(self.session_factory) as session:
                self._advisory_lock(session, provider_code, contract_type)
                record = self._load(session, batch_id, for_update=True)

                if record.status == ImportStatus.PROCESSING:
                    failed = (record.total_rows == 0
                              or record.error_rows > record.total_rows * self.settings.failure_ratio)
                    record.status = ImportStatus.FAILED if failed else ImportStatus.COMPLETED
                record.completed_at = record.completed_at or datetime.utcnow()
                record.error_log = list(record.error_log or [])[:self.settings.error_log_limit]

                if record.status == ImportStatus.COMPLETED and not record.is_latest:
                    previous = session.scalars(
                        select(RatebookImport)
                        .where(RatebookImport.provider_code == provider_code,
                               RatebookImport.contract_type == contract_type,
                               RatebookImport.is_latest.is_(True),
                               RatebookImport.id != record.id)
                        .with_for_update()
                    ).all()
                    for prior in previous:
                        prior.is_latest = False
                        record.superseded_import_id = prior.id
                    session.flush()
                    record.is_latest = True

                result = batch_to_dict(record)

        import_logger.log_import_finalized(
            batch_id=batch_id,
            status=result["status"],
            total_rows=result["total_rows"],
            success_rows=result["success_rows"],
            error_rows=result["error_rows"],
            unique_cap_codes=result["unique_cap_codes"],
        )
        return result

    @staticmethod
    def _advisory_lock(session: Session, provider_code: str, contract_type: str) -> None:
        """Serialize latest-pointer flips across processes on PostgreSQL."""
        if session.get_bind().dialect.name != "postgresql":
            return
        session.execute(
            text("SELECT pg_advisory_xact_lock(hashtext(:key))"),
            {"key": f"ratebook_latest:{provider_code}:{contract_type}"},
        )

    def abort(self, batch_id: str, reason: str = "aborted") -> Dict[str, Any]:
        """Mark a running import failed; rows already inserted stay with the batch."""
        with get_db_session(self.session_factory) as session:
            record = self._load(session, batch_id)
            if record.status == ImportStatus.PROCESSING:
                record.status = ImportStatus.FAILED
                record.completed_at = datetime.utcnow()
                record.details = {**(record.details or {}), "aborted": reason}
                self._append_errors(record, [f"Import aborted: {reason}"])
                import_logger.log_import_aborted(batch_id, reason)
            return batch_to_dict(record)

    def get_batch(self, batch_id: str) -> Dict[str, Any]:
        with get_db_session(self.session_factory) as session:
            return batch_to_dict(self._load(session, batch_id))


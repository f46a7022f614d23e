"""
Persisted import queue.

Jobs live in the ``import_jobs`` table and move

    pending -> running -> complete | error

At most one job runs per (provider, contract type) at a time.
"""

import threading
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import and_, exists, select
from sqlalchemy.orm import aliased, sessionmaker

from ..db.models import ImportJob, JobStatus
from ..db.session import get_db_session
from ..exceptions import InvalidJobTransition, JobNotFound, RatebookIngestError
from .importer import RatebookImporter

logger = structlog.get_logger()

TRANSITIONS = {
    JobStatus.PENDING: (JobStatus.RUNNING,),
    JobStatus.RUNNING: (JobStatus.COMPLETE, JobStatus.ERROR),
    JobStatus.COMPLETE: (),
    JobStatus.ERROR: (),
}


class ImportQueue:
    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory

    def enqueue(self, provider_code: str, contract_type: str, file_name: str,
                content: bytes, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        job = ImportJob(
            id=str(uuid.uuid4()),
            provider_code=provider_code.lower(),
            contract_type=contract_type.upper(),
            file_name=file_name,
            content=content,
            options=options or {},
            status=JobStatus.PENDING,
            created_at=datetime.utcnow(),
        )
        with get_db_session(self.session_factory) as session:
            session.add(job)
            session.flush()
            logger.info("Import job queued", job_id=job.id, provider_code=job.provider_code,
                        contract_type=job.contract_type, file_name=file_name)
            return self._to_dict(job)

    def claim_next(self, provider_code: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Move the oldest claimable job to ``running`` and return it with its content."""
        running = aliased(ImportJob)
        busy = exists().where(and_(
            running.status == JobStatus.RUNNING,
            running.provider_code == ImportJob.provider_code,
            running.contract_type == ImportJob.contract_type,
        ))
        stmt = select(ImportJob).where(ImportJob.status == JobStatus.PENDING, ~busy)
        if provider_code:
            stmt = stmt.where(ImportJob.provider_code == provider_code.lower())
        stmt = stmt.order_by(ImportJob.created_at, ImportJob.id).limit(1).with_for_update(skip_locked=True)

        with get_db_session(self.session_factory) as session:
            job = session.scalar(stmt)
            if job is None:
                return None
            self._move(job, JobStatus.RUNNING)
            job.started_at = datetime.utcnow()
            claimed = self._to_dict(job)
            claimed["content"] = job.content
            return claimed

    def complete(self, job_id: str, batch_id: Optional[str]) -> Dict[str, Any]:
        with get_db_session(self.session_factory) as session:
            job = self._load(session, job_id)
            self._move(job, JobStatus.COMPLETE)
            job.batch_id = batch_id
            job.finished_at = datetime.utcnow()
            return self._to_dict(job)

    def fail(self, job_id: str, error: str) -> Dict[str, Any]:
        with get_db_session(self.session_factory) as session:
            job = self._load(session, job_id)
            self._move(job, JobStatus.ERROR)
            job.error_message = error
            job.finished_at = datetime.utcnow()
            return self._to_dict(job)

    def get(self, job_id: str) -> Dict[str, Any]:
        with get_db_session(self.session_factory) as session:
            return self._to_dict(self._load(session, job_id))

    def list_jobs(self, status: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        stmt = select(ImportJob).order_by(ImportJob.created_at.desc()).limit(limit)
        if status:
            stmt = stmt.where(ImportJob.status == JobStatus(status))
        with get_db_session(self.session_factory) as session:
            return [self._to_dict(j) for j in session.scalars(stmt)]

    @staticmethod
    def _load(session, job_id: str) -> ImportJob:
        job = session.get(ImportJob, job_id)
        if job is None:
            raise JobNotFound(f"Import job {job_id} not found")
        return job

    @staticmethod
    def _move(job: ImportJob, to_status: JobStatus) -> None:
        if to_status not in TRANSITIONS[job.status]:
            raise InvalidJobTransition(job.id, job.status.value, to_status.value)
        logger.debug("Import job status changed", job_id=job.id,
                     from_status=job.status.value, to_status=to_status.value)
        job.status = to_status

    @staticmethod
    def _to_dict(job: ImportJob) -> Dict[str, Any]:
        return {
            "id": job.id,
            "provider_code": job.provider_code,
            "contract_type": job.contract_type,
            "file_name": job.file_name,
            "options": dict(job.options or {}),
            "status": job.status.value,
            "batch_id": job.batch_id,
            "error_message": job.error_message,
            "created_at": job.created_at,
            "started_at": job.started_at,
            "finished_at": job.finished_at,
        }


class ImportWorker:
    """Runs queued jobs through the importer, one at a time."""

    def __init__(self, queue: ImportQueue, importer: RatebookImporter):
        self.queue = queue
        self.importer = importer

    def run_once(self, provider_code: Optional[str] = None) -> Optional[Dict[str, Any]]:
        job = self.queue.claim_next(provider_code)
        if job is None:
            return None

        options = job["options"]
        logger.info("Import job started", job_id=job["id"], provider_code=job["provider_code"])
        try:
            result = self.importer.import_file(
                job["provider_code"],
                job["contract_type"],
                job["file_name"],
                job["content"],
                column_overrides=options.get("column_overrides"),
                force_reimport=bool(options.get("force_reimport", False)),
            )
        except RatebookIngestError as e:
            logger.warning("Import job failed", job_id=job["id"], error=str(e))
            return self.queue.fail(job["id"], str(e))
        except Exception as e:
            logger.error("Import job crashed", job_id=job["id"], error=str(e))
            self.queue.fail(job["id"], f"{type(e).__name__}: {e}")
            raise

        logger.info("Import job finished", job_id=job["id"], batch_id=result.batch_id, status=result.status)
        return self.queue.complete(job["id"], result.batch_id)

    def run_forever(self, poll_interval: float = 5.0,
                    stop_event: Optional[threading.Event] = None) -> None:
        stop_event = stop_event or threading.Event()
        logger.info("Import worker started", poll_interval=poll_interval)
        while not stop_event.is_set():
            if self.run_once() is None:
                stop_event.wait(poll_interval)
        logger.info("Import worker stopped")

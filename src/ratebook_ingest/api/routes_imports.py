"""
Rate sheet upload and import batch routes.
"""

import json
from typing import Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from starlette.concurrency import run_in_threadpool

from ..config.settings import get_settings
from ..imports.batch_manager import ImportBatchManager
from ..imports.importer import RatebookImporter
from ..imports.queue import ImportQueue
from ..repositories.rates import RateRepository
from .deps import get_batch_manager, get_importer, get_queue, get_rate_repository
from .schemas import ImportJobResponse, ImportResponse

logger = structlog.get_logger()

router = APIRouter(tags=["imports"])


async def _read_upload(file: UploadFile) -> bytes:
    if not file.filename:
        raise HTTPException(status_code=400, detail="No filename provided")
    content = await file.read()
    limit = get_settings().max_upload_bytes
    if len(content) > limit:
        raise HTTPException(
            status_code=413,
            detail=f"File {file.filename} size {len(content)} bytes exceeds maximum {limit} bytes"
        )
    return content


def _parse_overrides(raw: Optional[str]) -> Optional[Dict[str, str]]:
    if not raw:
        return None
    try:
        overrides = json.loads(raw)
    except json.JSONDecodeError as e:
        raise HTTPException(status_code=400, detail=f"column_overrides is not valid JSON: {e}")
    if not isinstance(overrides, dict):
        raise HTTPException(status_code=400, detail="column_overrides must be a JSON object")
    return {str(k): (str(v) if v is not None else None) for k, v in overrides.items()}


@router.post("/imports", response_model=ImportResponse)
async def import_ratebook(
    file: UploadFile = File(...),
    provider_code: str = Form(...),
    contract_type: Optional[str] = Form(None),
    force_reimport: bool = Form(False),
    dry_run: bool = Form(False),
    column_overrides: Optional[str] = Form(None),
    importer: RatebookImporter = Depends(get_importer),
):
    """Import a rate sheet synchronously and return batch totals."""
    content = await _read_upload(file)
    overrides = _parse_overrides(column_overrides)
    logger.info("Rate sheet upload received", file_name=file.filename,
                provider_code=provider_code, size=len(content))

    result = await run_in_threadpool(
        importer.import_file,
        provider_code,
        contract_type,
        file.filename,
        content,
        column_overrides=overrides,
        force_reimport=force_reimport,
        dry_run=dry_run,
    )
    return result.to_dict()


@router.post("/imports/queue", response_model=ImportJobResponse, status_code=202)
async def queue_ratebook(
    file: UploadFile = File(...),
    provider_code: str = Form(...),
    contract_type: str = Form(...),
    force_reimport: bool = Form(False),
    column_overrides: Optional[str] = Form(None),
    queue: ImportQueue = Depends(get_queue),
):
    """Queue a rate sheet for the import worker."""
    content = await _read_upload(file)
    options = {"force_reimport": force_reimport, "column_overrides": _parse_overrides(column_overrides)}
    return await run_in_threadpool(queue.enqueue, provider_code, contract_type, file.filename, content, options)


@router.get("/imports/jobs/{job_id}", response_model=ImportJobResponse)
def get_import_job(job_id: str, queue: ImportQueue = Depends(get_queue)):
    return queue.get(job_id)


@router.post("/imports/analyze")
async def analyze_ratebook(
    file: UploadFile = File(...),
    provider_code: str = Form(...),
    column_overrides: Optional[str] = Form(None),
    importer: RatebookImporter = Depends(get_importer),
):
    """Detection, mapping suggestions and a parsed preview; nothing is written."""
    content = await _read_upload(file)
    return await run_in_threadpool(
        importer.analyze_file, provider_code, file.filename, content, _parse_overrides(column_overrides)
    )


@router.get("/imports")
def list_imports(
    provider: Optional[str] = None,
    contract_type: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    repository: RateRepository = Depends(get_rate_repository),
) -> List[dict]:
    return repository.list_imports(provider, contract_type, limit)


@router.get("/imports/{batch_id}")
def get_import(batch_id: str, repository: RateRepository = Depends(get_rate_repository)):
    """Full batch record including the stored error log."""
    return repository.get_import(batch_id)


@router.post("/imports/{batch_id}/abort")
def abort_import(batch_id: str, manager: ImportBatchManager = Depends(get_batch_manager)):
    return manager.abort(batch_id, reason="aborted via API")

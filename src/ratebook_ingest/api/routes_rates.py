from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from ..repositories.rates import RateRepository
from .deps import get_rate_repository

router = APIRouter(prefix="/rates", tags=["rates"])


@router.get("")
def list_rates(
    provider: Optional[str] = None,
    contract_type: Optional[str] = None,
    manufacturer: Optional[str] = None,
    min_rental: Optional[int] = Query(None, ge=0, description="Pence"),
    max_rental: Optional[int] = Query(None, ge=0, description="Pence"),
    min_score: Optional[int] = Query(None, ge=0, le=100),
    include_history: bool = False,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    repository: RateRepository = Depends(get_rate_repository),
):
    """Rates from latest batches unless ``include_history`` is set."""
    return repository.latest_rates(
        provider=provider,
        contract_type=contract_type,
        manufacturer=manufacturer,
        min_rental=min_rental,
        max_rental=max_rental,
        min_score=min_score,
        include_history=include_history,
        limit=limit,
        offset=offset,
    )


@router.get("/compare/{cap_code}")
def compare_rates(cap_code: str, repository: RateRepository = Depends(get_rate_repository)):
    return repository.compare_by_cap_code(cap_code)


@router.get("/gaps")
def coverage_gaps(providers: Optional[List[str]] = Query(None),
                  repository: RateRepository = Depends(get_rate_repository)):
    return repository.coverage_gaps(providers)

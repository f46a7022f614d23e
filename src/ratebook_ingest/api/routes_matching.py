"""
Vehicle match review routes.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from ..db.models import MatchStatus
from ..matching.workflow import MatchWorkflow
from .deps import get_workflow
from .schemas import ManualMatchRequest, MatchActionRequest, MatchStatsResponse

router = APIRouter(prefix="/matches", tags=["matching"])


@router.get("")
def list_matches(
    status: Optional[MatchStatus] = None,
    provider: Optional[str] = None,
    search: Optional[str] = None,
    has_match: Optional[bool] = None,
    min_confidence: Optional[int] = Query(None, ge=0, le=100),
    max_confidence: Optional[int] = Query(None, ge=0, le=100),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    workflow: MatchWorkflow = Depends(get_workflow),
):
    return workflow.list_matches(
        status=status.value if status else None,
        provider=provider,
        search=search,
        has_match=has_match,
        min_confidence=min_confidence,
        max_confidence=max_confidence,
        limit=limit,
        offset=offset,
    )


@router.get("/stats", response_model=MatchStatsResponse)
def match_stats(workflow: MatchWorkflow = Depends(get_workflow)):
    return workflow.match_stats()


@router.get("/{match_id}")
def get_match(match_id: int, workflow: MatchWorkflow = Depends(get_workflow)):
    return workflow.get(match_id)


@router.post("/{match_id}/confirm")
def confirm_match(match_id: int,
                  request: Optional[MatchActionRequest] = None,
                  workflow: MatchWorkflow = Depends(get_workflow)):
    return workflow.confirm(match_id, user=request.user if request else None)


@router.post("/{match_id}/reject")
def reject_match(match_id: int,
                 request: Optional[MatchActionRequest] = None,
                 workflow: MatchWorkflow = Depends(get_workflow)):
    return workflow.reject(match_id, user=request.user if request else None)


@router.post("/{match_id}/manual")
def manual_match(match_id: int, request: ManualMatchRequest,
                 workflow: MatchWorkflow = Depends(get_workflow)):
    return workflow.manual(match_id, request.cap_code, user=request.user)


@router.post("/{match_id}/rematch")
def rematch(match_id: int, workflow: MatchWorkflow = Depends(get_workflow)):
    return workflow.rematch(match_id)


@router.post("/{match_id}/reset")
def reset_match(match_id: int,
                request: Optional[MatchActionRequest] = None,
                workflow: MatchWorkflow = Depends(get_workflow)):
    """Reopen a confirmed, rejected or manual match for review."""
    return workflow.reset_to_pending(match_id, user=request.user if request else None)

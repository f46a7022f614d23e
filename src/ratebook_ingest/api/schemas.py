from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, validator


class SkippedSheet(BaseModel):
    sheet: str
    reason: str


class ImportResponse(BaseModel):
    """Outcome of one import call; ``errors`` is a truncated sample."""
    batch_id: Optional[str] = None
    status: str
    total_rates: int = 0
    total_rows: int = 0
    success_rows: int = 0
    error_rows: int = 0
    unique_cap_codes: int = 0
    low_confidence_plans: int = 0
    sheets_processed: List[str] = []
    sheets_skipped: List[SkippedSheet] = []
    errors: List[str] = []


class ImportJobResponse(BaseModel):
    id: str
    provider_code: str
    contract_type: str
    file_name: str
    status: str
    batch_id: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class MatchActionRequest(BaseModel):
    user: Optional[str] = Field(None, description="Reviewer recorded against the action")


class ManualMatchRequest(MatchActionRequest):
    cap_code: str = Field(..., description="CAP code chosen by the reviewer")

    @validator('cap_code')
    def cap_code_not_empty(cls, v):
        if not v or not v.strip():
            raise ValueError('cap_code cannot be empty')
        return v.strip()


class MatchStatsResponse(BaseModel):
    total: int
    by_status: Dict[str, int]
    with_cap_code: int
    average_confidence: Optional[float] = None


class MappingUpdateRequest(BaseModel):
    column_mappings: Dict[str, str] = Field(..., description="Source header -> canonical field")
    file_format: Optional[str] = None
    user: Optional[str] = None

    @validator('column_mappings')
    def mappings_not_empty(cls, v):
        if not v:
            raise ValueError('column_mappings cannot be empty')
        return v


class HealthResponse(BaseModel):
    status: str
    service: str
    version: str

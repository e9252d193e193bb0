"""
Pydantic schemas for sync jobs.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, field_validator

from leadsync.utils import to_naive_utc


class SyncMode(str, Enum):
    FULL_HISTORICAL = "FULL_HISTORICAL"
    DATE_RANGE = "DATE_RANGE"
    RESET_FROM_DATE = "RESET_FROM_DATE"
    INCREMENTAL = "INCREMENTAL"


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL_SUCCESS = "partial_success"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = {
    JobStatus.COMPLETED.value,
    JobStatus.FAILED.value,
    JobStatus.PARTIAL_SUCCESS.value,
    JobStatus.CANCELLED.value,
}


class RateLimitOverride(BaseModel):
    requests_per_second: Optional[float] = Field(None, gt=0)
    max_batch_size: Optional[int] = Field(None, ge=1)


class SyncRequest(BaseModel):
    """Sync job request (shape checks only; semantic checks happen in validate())."""
    mode: SyncMode
    platforms: List[str] = Field(..., description="e.g. ['smartlead', 'lemlist']")
    namespaces: Union[str, List[str]] = Field(default="all", description="'all' or explicit names")
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    reset_date: Optional[datetime] = None
    batch_size: Optional[int] = None
    rate_limit_overrides: Optional[Dict[str, RateLimitOverride]] = None
    callback_url: Optional[str] = None

    @field_validator("platforms")
    @classmethod
    def normalize_platforms(cls, v):
        return [p.strip().lower() for p in v if p and p.strip()]

    @field_validator("start_date", "end_date", "reset_date")
    @classmethod
    def naive_utc(cls, v):
        return to_naive_utc(v)

    def override_for(self, platform: str) -> Optional[Dict[str, Any]]:
        if not self.rate_limit_overrides or platform not in self.rate_limit_overrides:
            return None
        return self.rate_limit_overrides[platform].model_dump(exclude_none=True) or None


class SyncJobCreated(BaseModel):
    job_id: str
    status: str


class SyncJobResponse(BaseModel):
    id: str
    mode: str
    status: str
    platforms: List[str]
    namespaces: Union[str, List[str]]
    processed: int
    total: int
    errors: int
    cancel_requested: bool
    result_summary: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    resumed_from: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ValidationResponse(BaseModel):
    valid: bool
    errors: List[str] = []
    plan: Optional[Dict[str, Any]] = None

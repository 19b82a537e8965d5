from typing import List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, model_validator
from uuid import UUID
from datetime import datetime

from app.db.base_class import utcnow


class PartialFailure(BaseModel):
    """A single record that failed inside a sync batch."""
    record_id: Optional[str] = None
    message: str
    timestamp: datetime = Field(default_factory=utcnow)


class SyncSummary(BaseModel):
    processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0


# --- Query params ---
class SyncRunQuery(BaseModel):
    type: Optional[Literal["pull", "push", "full"]] = None
    status: Optional[Literal["running", "completed", "failed"]] = None
    limit: int = Field(default=20, ge=1, le=200)


# --- Responses ---
class SyncRunResponse(BaseModel):
    sync_run_id: UUID
    type: str = Field(validation_alias="sync_type")
    status: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    summary: SyncSummary
    errors: List[PartialFailure] = []
    triggered_by: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    @model_validator(mode="before")
    @classmethod
    def collect_summary(cls, data):
        # ORM rows keep the counts in separate columns
        if hasattr(data, "total_processed"):
            return {
                "sync_run_id": data.sync_run_id,
                "sync_type": data.sync_type,
                "status": data.status,
                "started_at": data.started_at,
                "completed_at": data.completed_at,
                "summary": SyncSummary(
                    processed=data.total_processed,
                    created=data.created_count,
                    updated=data.updated_count,
                    skipped=data.skipped_count,
                    failed=data.failed_count,
                ),
                "errors": data.errors or [],
                "triggered_by": data.triggered_by,
            }
        return data


class SyncResult(BaseModel):
    """Outcome of a pull run or of the export phase of a full sync."""
    success: bool
    sync_run_id: UUID
    summary: SyncSummary
    errors: List[PartialFailure] = []


class FullSyncResult(BaseModel):
    success: bool
    pull: SyncResult
    export: SyncResult


class PushRequest(BaseModel):
    status: Optional[str] = None
    name: Optional[str] = None
    notes: Optional[str] = None


class PushResult(BaseModel):
    """Push outcome; failures are reported here instead of being raised."""
    success: bool
    message: Optional[str] = None
    external_id: Optional[str] = None
    sync_run_id: Optional[UUID] = None


class LastSyncInfo(BaseModel):
    type: str
    completed_at: datetime
    summary: SyncSummary

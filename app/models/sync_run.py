# models/sync_run.py
from sqlalchemy import Column, String, DateTime, Integer, JSON, Uuid, Index, CheckConstraint
from uuid import uuid4
from app.db.base_class import Base, utcnow
from app.models.lead import _in_clause

SYNC_TYPES = ("pull", "push", "full")
SYNC_STATUSES = ("running", "completed", "failed")


class SyncRun(Base):
    __tablename__ = "sync_runs"

    sync_run_id = Column(Uuid, primary_key=True, default=uuid4)
    sync_type = Column(String(10), nullable=False)
    status = Column(String(10), nullable=False, default="running")
    started_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True)

    # Summary counts
    total_processed = Column(Integer, nullable=False, default=0)
    created_count = Column(Integer, nullable=False, default=0)
    updated_count = Column(Integer, nullable=False, default=0)
    skipped_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)

    # [{"record_id", "message", "timestamp"}]
    errors = Column(JSON, nullable=False, default=list)
    triggered_by = Column(String(64), nullable=True)

    __table_args__ = (
        CheckConstraint(_in_clause("sync_type", SYNC_TYPES), name="chk_sync_type"),
        CheckConstraint(_in_clause("status", SYNC_STATUSES), name="chk_sync_status"),
        Index("idx_sync_type_started", "sync_type", "started_at"),
        Index("idx_sync_status", "status"),
    )

    @property
    def is_finished(self) -> bool:
        return self.status != "running"

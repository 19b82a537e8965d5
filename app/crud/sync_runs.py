# crud/sync_runs.py
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from typing import Iterable, List, Optional
from uuid import UUID, uuid4

from app.core.exceptions import StateError
from app.db.base_class import utcnow
from app.models import SyncRun
from app.schemas.sync import PartialFailure, SyncSummary


# ---------------- CREATE ----------------
async def create_sync_run(db: AsyncSession, sync_type: str, triggered_by: Optional[str] = None) -> SyncRun:
    now = utcnow()
    sync_run = SyncRun(
        sync_run_id=uuid4(),
        sync_type=sync_type,
        status="running",
        started_at=now,
        errors=[],
        triggered_by=triggered_by,
        created_at=now,
        updated_at=now,
    )
    db.add(sync_run)
    await db.commit()
    return sync_run


# ---------------- READ ----------------
async def get_sync_run(db: AsyncSession, sync_run_id: UUID) -> Optional[SyncRun]:
    result = await db.execute(select(SyncRun).where(SyncRun.sync_run_id == sync_run_id))
    return result.scalar_one_or_none()


async def list_sync_runs(
    db: AsyncSession,
    sync_type: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 20,
) -> List[SyncRun]:
    stmt = select(SyncRun)
    if sync_type:
        stmt = stmt.where(SyncRun.sync_type == sync_type)
    if status:
        stmt = stmt.where(SyncRun.status == status)
    stmt = stmt.order_by(SyncRun.started_at.desc()).limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def get_last_completed_sync_run(db: AsyncSession, sync_type: Optional[str] = None) -> Optional[SyncRun]:
    """Most recent successfully completed run, optionally of a single type."""
    stmt = select(SyncRun).where(SyncRun.status == "completed")
    if sync_type:
        stmt = stmt.where(SyncRun.sync_type == sync_type)
    stmt = stmt.order_by(SyncRun.completed_at.desc()).limit(1)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


# ---------------- FINISH ----------------
async def finish_sync_run(
    db: AsyncSession,
    sync_run: SyncRun,
    status: str,
    summary: SyncSummary,
    errors: Iterable[PartialFailure] = (),
) -> SyncRun:
    """Stamp the final state of a run. A finished run is never modified again."""
    if sync_run.is_finished:
        raise StateError(f"Sync run {sync_run.sync_run_id} already {sync_run.status}")
    if status not in ("completed", "failed"):
        raise ValueError(f"Invalid final sync status: {status}")

    now = utcnow()
    sync_run.status = status
    sync_run.completed_at = now
    sync_run.updated_at = now
    sync_run.total_processed = summary.processed
    sync_run.created_count = summary.created
    sync_run.updated_count = summary.updated
    sync_run.skipped_count = summary.skipped
    sync_run.failed_count = summary.failed
    # Reassign so the JSON column is flagged dirty
    sync_run.errors = list(sync_run.errors or []) + [e.model_dump(mode="json") for e in errors]
    await db.commit()
    return sync_run

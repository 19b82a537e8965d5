# app/crud/lead.py
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from app.db.base_class import utcnow
from app.models import Lead, LEAD_STATUSES


def as_uuid(value: Any) -> Optional[UUID]:
    """Parse a lead id; returns None when it cannot be a valid id."""
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        return None


# --- Insert Lead ---
async def create_lead(db: AsyncSession, lead_data: Dict[str, Any], source: str, **fields) -> Lead:
    now = utcnow()
    new_lead = Lead(
        lead_id=uuid4(),
        **lead_data,
        source=source,
        status=fields.pop("status", "new"),
        synced_to_external=fields.pop("synced_to_external", False),
        activity_seq=0,
        created_at=now,
        updated_at=now,
        **fields,
    )
    # Fresh aggregate: start with loaded, empty child collections
    new_lead.activities = []
    new_lead.viewings = {}
    new_lead.interested_properties = {}
    db.add(new_lead)
    await db.flush()
    return new_lead


# --- Fetch Lead by ID ---
async def get_lead_by_id(db: AsyncSession, lead_id: Any) -> Lead | None:
    lead_uuid = as_uuid(lead_id)
    if lead_uuid is None:
        return None
    result = await db.execute(select(Lead).where(Lead.lead_id == lead_uuid))
    return result.scalar_one_or_none()


# --- Fetch Lead by external CRM id ---
async def get_lead_by_external_id(db: AsyncSession, external_id: Any) -> Lead | None:
    result = await db.execute(select(Lead).where(Lead.external_id == str(external_id)))
    return result.scalar_one_or_none()


# --- Update Lead fields ---
async def update_lead(db: AsyncSession, lead: Lead, **fields) -> Lead:
    for key, value in fields.items():
        setattr(lead, key, value)
    lead.updated_at = utcnow()
    await db.flush()
    return lead


# --- List Leads ---
async def list_leads(
    db: AsyncSession,
    status: Optional[str] = None,
    assigned_to: Optional[str] = None,
    synced: Optional[bool] = None,
    limit: int = 100,
) -> List[Lead]:
    stmt = select(Lead)
    if status:
        stmt = stmt.where(Lead.status == status)
    if assigned_to:
        stmt = stmt.where(Lead.assigned_to == assigned_to)
    if synced is not None:
        stmt = stmt.where(Lead.synced_to_external == synced)
    stmt = stmt.order_by(Lead.created_at.desc()).limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())


# --- Lead statistics ---
async def get_lead_stats(db: AsyncSession) -> Dict[str, Any]:
    rows = await db.execute(select(Lead.status, func.count()).group_by(Lead.status))
    by_status = {status: 0 for status in LEAD_STATUSES}
    for status, count in rows.all():
        by_status[status] = count

    synced = await db.execute(
        select(func.count()).select_from(Lead).where(Lead.synced_to_external.is_(True))
    )
    synced_count = synced.scalar() or 0
    total = sum(by_status.values())

    return {
        "total": total,
        "by_status": by_status,
        "synced_to_external": synced_count,
        "unsynced_to_external": total - synced_count,
    }

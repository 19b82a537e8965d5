# crud/lead_activities.py
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from app.db.base_class import utcnow
from app.models import Lead, LeadActivity


# Append an activity to the lead's ledger (there is deliberately no update/delete)
def append_activity(
    lead: Lead,
    activity_type: str,
    description: str,
    actor_id: Optional[str] = None,
    actor_name: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> LeadActivity:
    sequence = (lead.activity_seq or 0) + 1
    lead.activity_seq = sequence
    now = utcnow()
    activity = LeadActivity(
        activity_id=uuid4(),
        lead_id=lead.lead_id,
        sequence=sequence,
        activity_type=activity_type,
        description=description,
        actor_id=actor_id,
        actor_name=actor_name,
        details=dict(metadata or {}),
        created_at=now,
        updated_at=now,
    )
    # Most-recent-first, matching the relationship ordering
    lead.activities.insert(0, activity)
    return activity


# List activities for a lead, most recent first
async def get_activities_by_lead(db: AsyncSession, lead_id: UUID, limit: int = 50) -> List[LeadActivity]:
    result = await db.execute(
        select(LeadActivity)
        .where(LeadActivity.lead_id == lead_id)
        .order_by(LeadActivity.sequence.desc())
        .limit(limit)
    )
    return list(result.scalars().all())

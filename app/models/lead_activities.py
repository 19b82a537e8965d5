# models/lead_activities.py
from sqlalchemy import Column, String, Text, Integer, JSON, Uuid, ForeignKey, Index, CheckConstraint, UniqueConstraint, event, inspect
from sqlalchemy.orm import relationship
from uuid import uuid4
from app.core.exceptions import StateError
from app.db.base_class import Base
from app.models.lead import _in_clause

ACTIVITY_TYPES = (
    "lead_created",
    "status_change",
    "note_added",
    "assigned",
    "call_logged",
    "email_sent",
    "viewing_scheduled",
    "viewing_completed",
    "property_interested",
    "synced_to_external",
)


class LeadActivity(Base):
    __tablename__ = "lead_activities"

    activity_id = Column(Uuid, primary_key=True, default=uuid4)
    lead_id = Column(Uuid, ForeignKey("leads.lead_id", ondelete="CASCADE"), nullable=False)
    sequence = Column(Integer, nullable=False)
    activity_type = Column(String(30), nullable=False)
    description = Column(Text, nullable=False)
    actor_id = Column(String(64), nullable=True)
    actor_name = Column(String(200), nullable=True)
    details = Column("metadata", JSON, nullable=False, default=dict)

    __table_args__ = (
        CheckConstraint(_in_clause("activity_type", ACTIVITY_TYPES), name="chk_activity_type"),
        UniqueConstraint("lead_id", "sequence", name="uq_activity_lead_sequence"),
        Index("idx_activity_type", "activity_type"),
        Index("idx_activity_time", "created_at"),
    )

    # Relationships
    lead = relationship("Lead", back_populates="activities")


@event.listens_for(LeadActivity, "before_update")
def _reject_activity_update(mapper, connection, target):
    state = inspect(target)
    changed = [attr.key for attr in mapper.column_attrs if state.attrs[attr.key].history.has_changes()]
    if changed:
        raise StateError(f"Activity {target.activity_id} is immutable (attempted change: {', '.join(changed)})")

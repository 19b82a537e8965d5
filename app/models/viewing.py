# models/viewing.py
from sqlalchemy import Column, String, Text, DateTime, Uuid, ForeignKey, Index, CheckConstraint
from sqlalchemy.orm import relationship
from uuid import uuid4
from app.db.base_class import Base
from app.models.lead import _in_clause

VIEWING_STATUSES = ("scheduled", "completed", "cancelled")
TERMINAL_VIEWING_STATUSES = ("completed", "cancelled")


class Viewing(Base):
    __tablename__ = "viewings"

    viewing_id = Column(Uuid, primary_key=True, default=uuid4)
    lead_id = Column(Uuid, ForeignKey("leads.lead_id", ondelete="CASCADE"), nullable=False)
    property_id = Column(String(64), nullable=False)
    property_name = Column(String(255), nullable=True)
    scheduled_date = Column(String(10), nullable=False)  # YYYY-MM-DD
    scheduled_time = Column(String(5), nullable=False)   # HH:MM
    status = Column(String(20), nullable=False, default="scheduled")
    notes = Column(Text, nullable=True)
    outcome = Column(String(100), nullable=True)
    completed_notes = Column(Text, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    completed_by = Column(String(64), nullable=True)
    created_by = Column(String(64), nullable=True)

    __table_args__ = (
        CheckConstraint(_in_clause("status", VIEWING_STATUSES), name="chk_viewing_status"),
        Index("idx_viewing_lead", "lead_id"),
        Index("idx_viewing_date", "scheduled_date"),
    )

    # Relationships
    lead = relationship("Lead", back_populates="viewings")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_VIEWING_STATUSES

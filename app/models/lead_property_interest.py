# models/lead_property_interest.py
from sqlalchemy import Column, String, Text, DateTime, Uuid, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import relationship
from uuid import uuid4
from app.db.base_class import Base, utcnow


class LeadPropertyInterest(Base):
    __tablename__ = "lead_property_interests"

    interest_id = Column(Uuid, primary_key=True, default=uuid4)
    lead_id = Column(Uuid, ForeignKey("leads.lead_id", ondelete="CASCADE"), nullable=False)
    property_id = Column(String(64), nullable=False)
    property_name = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)
    added_by = Column(String(64), nullable=True)
    added_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("lead_id", "property_id", name="unique_lead_property"),
        Index("idx_interest_property", "property_id"),
    )

    # Relationships
    lead = relationship("Lead", back_populates="interested_properties")

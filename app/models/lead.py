# models/lead.py
from sqlalchemy import Column, String, Text, DateTime, Boolean, Integer, Uuid, CheckConstraint, Index
from sqlalchemy.orm import relationship, attribute_keyed_dict
from uuid import uuid4
from app.db.base_class import Base

LEAD_STATUSES = ("new", "contacted", "qualified", "viewing", "negotiating", "won", "lost")


def _in_clause(column: str, values: tuple) -> str:
    return f"{column} IN ({','.join(repr(v) for v in values)})"


class Lead(Base):
    __tablename__ = "leads"

    lead_id = Column(Uuid, primary_key=True, default=uuid4)

    # Contact
    name = Column(String(200), nullable=False)
    email = Column(String(255), nullable=False)
    phone = Column(String(30), nullable=True)
    subject = Column(String(255), nullable=True)
    message = Column(Text, nullable=True)

    # Preferences (mirrored to the CRM's custom fields)
    budget_range = Column(String(30), nullable=True)
    preferred_region = Column(String(100), nullable=True)
    property_interest = Column(String(255), nullable=True)
    communication_preference = Column(String(30), nullable=True, default="whatsapp")

    status = Column(String(20), nullable=False, default="new")
    source = Column(String(50), nullable=False, default="website_contact_form")

    # Assignment
    assigned_to = Column(String(64), nullable=True)
    assigned_to_name = Column(String(200), nullable=True)
    assigned_at = Column(DateTime, nullable=True)
    assigned_by = Column(String(64), nullable=True)

    # Communication tracking
    last_contacted_at = Column(DateTime, nullable=True)
    last_note = Column(Text, nullable=True)

    # External CRM sync
    synced_to_external = Column(Boolean, nullable=False, default=False)
    external_id = Column(String(64), nullable=True, unique=True)
    synced_at = Column(DateTime, nullable=True)
    external_write_timestamp = Column(DateTime, nullable=True)

    # Highest activity sequence handed out so far
    activity_seq = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint(_in_clause("status", LEAD_STATUSES), name="chk_lead_status"),
        Index("idx_leads_status", "status", "created_at"),
        Index("idx_leads_email", "email"),
        Index("idx_leads_assigned", "assigned_to", "status"),
        Index("idx_leads_synced", "synced_to_external", "created_at"),
        Index("idx_leads_source", "source"),
    )

    # Relationships (eager so aggregates can be used after the session yields)
    activities = relationship(
        "LeadActivity",
        back_populates="lead",
        cascade="all, delete-orphan",
        order_by="LeadActivity.sequence.desc()",
        lazy="selectin",
    )
    viewings = relationship(
        "Viewing",
        back_populates="lead",
        cascade="all, delete-orphan",
        collection_class=attribute_keyed_dict("viewing_id"),
        lazy="selectin",
    )
    interested_properties = relationship(
        "LeadPropertyInterest",
        back_populates="lead",
        cascade="all, delete-orphan",
        collection_class=attribute_keyed_dict("property_id"),
        lazy="selectin",
    )

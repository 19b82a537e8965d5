from typing import Any, Dict, List, Optional, Annotated
from pydantic import BaseModel, ConfigDict, EmailStr, Field, StringConstraints, field_validator
from uuid import UUID
from datetime import date, datetime, time

from app.schemas.sync import PushResult

Name = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=200)]
RefId = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=64)]


# --- References ---
class ActorRef(BaseModel):
    """Whoever performs an operation; resolved to a plain id at the aggregate boundary."""
    id: Optional[str] = None
    name: Optional[str] = None


SYSTEM_ACTOR = ActorRef(id=None, name="System")


class AgentRef(BaseModel):
    id: RefId
    name: Optional[str] = None


# --- Domain inputs ---
class ContactInfo(BaseModel):
    name: Name
    email: EmailStr
    phone: Optional[str] = None
    subject: Optional[str] = None
    message: Optional[str] = None
    budget_range: Optional[str] = None
    preferred_region: Optional[str] = None
    property_interest: Optional[str] = None
    communication_preference: Optional[str] = "whatsapp"

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, v: str) -> str:
        return v.strip().lower()


class CallLog(BaseModel):
    outcome: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
    duration: Optional[int] = Field(default=None, ge=0, description="Minutes")
    notes: Optional[str] = None


class EmailLog(BaseModel):
    model_config = ConfigDict(extra="allow")

    subject: Optional[str] = None
    type: Optional[str] = None


class PropertyInterestData(BaseModel):
    property_id: RefId
    property_name: Optional[str] = None
    notes: Optional[str] = None


class ViewingData(BaseModel):
    property_id: RefId
    property_name: Optional[str] = None
    scheduled_date: date
    scheduled_time: time
    notes: Optional[str] = None


# --- Requests ---
class LeadCreateRequest(ContactInfo):
    source: str = "website_contact_form"


class StatusChangeRequest(BaseModel):
    status: str
    notes: Optional[str] = None  # forwarded to the CRM when the lead is linked


class AssignRequest(BaseModel):
    agent_id: RefId
    agent_name: Optional[str] = None


class NoteRequest(BaseModel):
    note: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class ViewingCompleteRequest(BaseModel):
    outcome: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
    notes: Optional[str] = None


class ViewingCancelRequest(BaseModel):
    reason: Optional[str] = None


# --- Responses ---
class ActivityResponse(BaseModel):
    activity_id: UUID
    sequence: int
    type: str = Field(validation_alias="activity_type")
    description: str
    actor_id: Optional[str] = None
    actor_name: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias="details")
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ViewingResponse(BaseModel):
    viewing_id: UUID
    property_id: str
    property_name: Optional[str] = None
    scheduled_date: str
    scheduled_time: str
    status: str
    notes: Optional[str] = None
    outcome: Optional[str] = None
    completed_notes: Optional[str] = None
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None
    created_by: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class PropertyInterestResponse(BaseModel):
    property_id: str
    property_name: Optional[str] = None
    notes: Optional[str] = None
    added_by: Optional[str] = None
    added_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class LeadResponse(BaseModel):
    lead_id: UUID
    name: str
    email: str
    phone: Optional[str] = None
    subject: Optional[str] = None
    message: Optional[str] = None
    status: str
    source: str
    budget_range: Optional[str] = None
    preferred_region: Optional[str] = None
    property_interest: Optional[str] = None
    communication_preference: Optional[str] = None
    assigned_to: Optional[str] = None
    assigned_to_name: Optional[str] = None
    assigned_at: Optional[datetime] = None
    assigned_by: Optional[str] = None
    last_contacted_at: Optional[datetime] = None
    last_note: Optional[str] = None
    synced_to_external: bool
    external_id: Optional[str] = None
    synced_at: Optional[datetime] = None
    external_write_timestamp: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    activities: List[ActivityResponse] = []
    viewings: List[ViewingResponse] = []
    interested_properties: List[PropertyInterestResponse] = []

    model_config = ConfigDict(from_attributes=True)

    @field_validator("viewings", "interested_properties", mode="before")
    @classmethod
    def keyed_collection_to_list(cls, v):
        # Keyed ORM collections arrive as dicts
        if isinstance(v, dict):
            return list(v.values())
        return v


class LeadStatsResponse(BaseModel):
    total: int
    by_status: Dict[str, int]
    synced_to_external: int
    unsynced_to_external: int


class StatusChangeResponse(BaseModel):
    """Status change result; `push` is set when the lead is linked to the CRM."""
    lead: LeadResponse
    push: Optional[PushResult] = None


class ViewingScheduledResponse(BaseModel):
    viewing: ViewingResponse
    calendar: Optional[PushResult] = None

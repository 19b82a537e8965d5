from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, model_validator
from datetime import datetime

# Remote timestamps are UTC "YYYY-MM-DD HH:MM:SS"
REMOTE_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"

# Fields requested when pulling remote leads
REMOTE_LEAD_FIELDS = [
    "id",
    "name",
    "contact_name",
    "email_from",
    "phone",
    "description",
    "stage_id",
    "create_date",
    "write_date",
    "x_budget_range",
    "x_preferred_county",
    "x_property_interest",
    "x_communication_preference",
]


def format_remote_datetime(value: datetime) -> str:
    return value.strftime(REMOTE_DATETIME_FORMAT)


def parse_remote_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(value[:19], REMOTE_DATETIME_FORMAT)


class CRMSession(BaseModel):
    session_id: str
    user_id: int
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class RemoteLead(BaseModel):
    """A lead record as returned by the CRM's search_read."""
    id: int
    name: Optional[str] = None
    contact_name: Optional[str] = None
    email_from: Optional[str] = None
    phone: Optional[str] = None
    description: Optional[str] = None
    stage_id: Optional[Any] = None  # [id, "Stage Name"]
    create_date: Optional[str] = None
    write_date: Optional[str] = None
    x_budget_range: Optional[str] = None
    x_preferred_county: Optional[str] = None
    x_property_interest: Optional[str] = None
    x_communication_preference: Optional[str] = None

    model_config = ConfigDict(extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def false_means_empty(cls, data):
        # The CRM encodes unset fields as `false`
        if isinstance(data, dict):
            return {k: (None if v is False else v) for k, v in data.items()}
        return data

    @property
    def stage_name(self) -> Optional[str]:
        if isinstance(self.stage_id, (list, tuple)) and len(self.stage_id) > 1:
            return self.stage_id[1]
        return None

    @property
    def written_at(self) -> Optional[datetime]:
        return parse_remote_datetime(self.write_date)

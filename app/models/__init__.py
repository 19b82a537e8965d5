from .lead import Lead, LEAD_STATUSES
from .lead_activities import LeadActivity, ACTIVITY_TYPES
from .viewing import Viewing, VIEWING_STATUSES
from .lead_property_interest import LeadPropertyInterest
from .sync_run import SyncRun, SYNC_TYPES, SYNC_STATUSES

__all__ = [
    "Lead",
    "LeadActivity",
    "Viewing",
    "LeadPropertyInterest",
    "SyncRun",
    "LEAD_STATUSES",
    "ACTIVITY_TYPES",
    "VIEWING_STATUSES",
    "SYNC_TYPES",
    "SYNC_STATUSES",
]

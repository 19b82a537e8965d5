from typing import Optional

from fastapi import Header, Request

from app.schemas.lead import SYSTEM_ACTOR, ActorRef
from app.services.crm_session import CRMSessionManager
from app.services.sync_engine import SyncEngine


# Components are built once in the app lifespan and kept on app.state
def get_sync_engine(request: Request) -> SyncEngine:
    return request.app.state.sync_engine


def get_crm_sessions(request: Request) -> CRMSessionManager:
    return request.app.state.crm_sessions


def get_actor(
    x_actor_id: Optional[str] = Header(default=None),
    x_actor_name: Optional[str] = Header(default=None),
) -> ActorRef:
    if x_actor_id is None and x_actor_name is None:
        return SYSTEM_ACTOR
    return ActorRef(id=x_actor_id, name=x_actor_name)

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional
from uuid import UUID
import logging
import traceback

from app.core.dependencies import get_actor, get_sync_engine
from app.core.exceptions import LeadManagementError
from app.db.session import get_db
from app.schemas.lead import (
    ActivityResponse,
    ActorRef,
    AgentRef,
    AssignRequest,
    CallLog,
    EmailLog,
    LeadCreateRequest,
    LeadResponse,
    LeadStatsResponse,
    NoteRequest,
    PropertyInterestData,
    StatusChangeRequest,
    StatusChangeResponse,
    ViewingCancelRequest,
    ViewingCompleteRequest,
    ViewingData,
    ViewingResponse,
    ViewingScheduledResponse,
)
from app.schemas.sync import PushRequest
from app.services.lead_services import LeadServices
from app.services.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/leads", tags=["Leads"])


@router.post(
    "",
    response_model=LeadResponse,
    status_code=201,
    summary="Create a lead",
    description="Creates a lead in status `new` with a single `lead_created` activity."
)
async def create_lead(
    request: LeadCreateRequest,
    db: AsyncSession = Depends(get_db),
    actor: ActorRef = Depends(get_actor),
):
    try:
        contact = request.model_dump(exclude={"source"})
        return await LeadServices.create_lead(db, contact, request.source, actor)
    except LeadManagementError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except Exception as e:
        logger.error("Error in create_lead: %s\n%s", e, traceback.format_exc())
        raise HTTPException(status_code=500, detail="Internal Server Error")


@router.get(
    "",
    response_model=List[LeadResponse],
    summary="List leads",
    description="Lists leads filtered by status, assigned agent or sync state, newest first."
)
async def list_leads(
    status: Optional[str] = Query(None, description="Lead status"),
    assigned_to: Optional[str] = Query(None, description="Agent id"),
    synced: Optional[bool] = Query(None, description="Linked to the external CRM"),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await LeadServices.list_leads(db, status=status, assigned_to=assigned_to, synced=synced, limit=limit)
    except LeadManagementError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except Exception as e:
        logger.error("Error in list_leads: %s\n%s", e, traceback.format_exc())
        raise HTTPException(status_code=500, detail="Internal Server Error")


@router.get("/stats", response_model=LeadStatsResponse, summary="Lead counts per status and sync state")
async def get_lead_stats(db: AsyncSession = Depends(get_db)):
    try:
        return await LeadServices.get_stats(db)
    except Exception as e:
        logger.error("Error in get_lead_stats: %s\n%s", e, traceback.format_exc())
        raise HTTPException(status_code=500, detail="Internal Server Error")


@router.get("/{lead_id}", response_model=LeadResponse, summary="Get a lead")
async def get_lead(lead_id: UUID, db: AsyncSession = Depends(get_db)):
    try:
        return await LeadServices.get_lead(db, lead_id)
    except LeadManagementError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except Exception as e:
        logger.error("Error in get_lead: %s\n%s", e, traceback.format_exc())
        raise HTTPException(status_code=500, detail="Internal Server Error")


@router.get(
    "/{lead_id}/activities",
    response_model=List[ActivityResponse],
    summary="Get the activity ledger of a lead",
    description="Returns the lead's activities, most recent first."
)
async def get_lead_activities(
    lead_id: UUID,
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await LeadServices.get_activities(db, lead_id, limit=limit)
    except LeadManagementError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except Exception as e:
        logger.error("Error in get_lead_activities: %s\n%s", e, traceback.format_exc())
        raise HTTPException(status_code=500, detail="Internal Server Error")


@router.put(
    "/{lead_id}/status",
    response_model=StatusChangeResponse,
    summary="Change lead status",
    description="Changes the status of a lead. Linked leads are then pushed to the CRM; "
                "a failed push is reported in the response and does not undo the change."
)
async def change_lead_status(
    lead_id: UUID,
    request: StatusChangeRequest,
    db: AsyncSession = Depends(get_db),
    actor: ActorRef = Depends(get_actor),
    engine: SyncEngine = Depends(get_sync_engine),
):
    try:
        lead = await LeadServices.change_status(db, lead_id, request.status, actor)
        push = None
        if lead.external_id:
            push = await engine.push(
                db,
                lead.lead_id,
                PushRequest(status=request.status, notes=request.notes),
                triggered_by=actor.id,
            )
        return StatusChangeResponse(lead=LeadResponse.model_validate(lead), push=push)
    except LeadManagementError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except Exception as e:
        logger.error("Error in change_lead_status: %s\n%s", e, traceback.format_exc())
        raise HTTPException(status_code=500, detail="Internal Server Error")


@router.put("/{lead_id}/assign", response_model=LeadResponse, summary="Assign or reassign the lead's agent")
async def assign_lead(
    lead_id: UUID,
    request: AssignRequest,
    db: AsyncSession = Depends(get_db),
    actor: ActorRef = Depends(get_actor),
):
    try:
        agent = AgentRef(id=request.agent_id, name=request.agent_name)
        return await LeadServices.assign(db, lead_id, agent, actor)
    except LeadManagementError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except Exception as e:
        logger.error("Error in assign_lead: %s\n%s", e, traceback.format_exc())
        raise HTTPException(status_code=500, detail="Internal Server Error")


@router.post("/{lead_id}/notes", response_model=LeadResponse, summary="Add a note")
async def add_note(
    lead_id: UUID,
    request: NoteRequest,
    db: AsyncSession = Depends(get_db),
    actor: ActorRef = Depends(get_actor),
):
    try:
        return await LeadServices.add_note(db, lead_id, request.note, actor)
    except LeadManagementError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except Exception as e:
        logger.error("Error in add_note: %s\n%s", e, traceback.format_exc())
        raise HTTPException(status_code=500, detail="Internal Server Error")


@router.post("/{lead_id}/calls", response_model=LeadResponse, summary="Log a call")
async def log_call(
    lead_id: UUID,
    request: CallLog,
    db: AsyncSession = Depends(get_db),
    actor: ActorRef = Depends(get_actor),
):
    try:
        return await LeadServices.log_call(db, lead_id, request, actor)
    except LeadManagementError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except Exception as e:
        logger.error("Error in log_call: %s\n%s", e, traceback.format_exc())
        raise HTTPException(status_code=500, detail="Internal Server Error")


@router.post("/{lead_id}/emails", response_model=LeadResponse, summary="Log a sent email")
async def log_email(
    lead_id: UUID,
    request: EmailLog,
    db: AsyncSession = Depends(get_db),
    actor: ActorRef = Depends(get_actor),
):
    try:
        return await LeadServices.log_email(db, lead_id, request, actor)
    except LeadManagementError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except Exception as e:
        logger.error("Error in log_email: %s\n%s", e, traceback.format_exc())
        raise HTTPException(status_code=500, detail="Internal Server Error")


@router.post("/{lead_id}/properties", response_model=LeadResponse, summary="Record interest in a property")
async def add_property_interest(
    lead_id: UUID,
    request: PropertyInterestData,
    db: AsyncSession = Depends(get_db),
    actor: ActorRef = Depends(get_actor),
):
    try:
        return await LeadServices.add_property_interest(db, lead_id, request, actor)
    except LeadManagementError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except Exception as e:
        logger.error("Error in add_property_interest: %s\n%s", e, traceback.format_exc())
        raise HTTPException(status_code=500, detail="Internal Server Error")


@router.post(
    "/{lead_id}/viewings",
    response_model=ViewingScheduledResponse,
    status_code=201,
    summary="Schedule a viewing",
    description="Schedules a property viewing. For linked leads the viewing is also put in the CRM calendar."
)
async def schedule_viewing(
    lead_id: UUID,
    request: ViewingData,
    db: AsyncSession = Depends(get_db),
    actor: ActorRef = Depends(get_actor),
    engine: SyncEngine = Depends(get_sync_engine),
):
    try:
        viewing = await LeadServices.schedule_viewing(db, lead_id, request, actor)
        lead = await LeadServices.get_lead(db, lead_id)
        calendar = None
        if lead.external_id:
            calendar = await engine.push_viewing(db, lead_id, viewing.viewing_id)
        return ViewingScheduledResponse(viewing=ViewingResponse.model_validate(viewing), calendar=calendar)
    except LeadManagementError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except Exception as e:
        logger.error("Error in schedule_viewing: %s\n%s", e, traceback.format_exc())
        raise HTTPException(status_code=500, detail="Internal Server Error")


@router.put(
    "/{lead_id}/viewings/{viewing_id}/complete",
    response_model=ViewingResponse,
    summary="Complete a scheduled viewing"
)
async def complete_viewing(
    lead_id: UUID,
    viewing_id: UUID,
    request: ViewingCompleteRequest,
    db: AsyncSession = Depends(get_db),
    actor: ActorRef = Depends(get_actor),
):
    try:
        return await LeadServices.complete_viewing(db, lead_id, viewing_id, request.outcome, request.notes, actor)
    except LeadManagementError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except Exception as e:
        logger.error("Error in complete_viewing: %s\n%s", e, traceback.format_exc())
        raise HTTPException(status_code=500, detail="Internal Server Error")


@router.put(
    "/{lead_id}/viewings/{viewing_id}/cancel",
    response_model=ViewingResponse,
    summary="Cancel a scheduled viewing"
)
async def cancel_viewing(
    lead_id: UUID,
    viewing_id: UUID,
    request: ViewingCancelRequest,
    db: AsyncSession = Depends(get_db),
    actor: ActorRef = Depends(get_actor),
):
    try:
        return await LeadServices.cancel_viewing(db, lead_id, viewing_id, request.reason, actor)
    except LeadManagementError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except Exception as e:
        logger.error("Error in cancel_viewing: %s\n%s", e, traceback.format_exc())
        raise HTTPException(status_code=500, detail="Internal Server Error")

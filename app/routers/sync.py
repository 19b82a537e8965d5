from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional
from uuid import UUID
import logging
import traceback

from app.core.dependencies import get_actor, get_crm_sessions, get_sync_engine
from app.core.exceptions import LeadManagementError, SyncRunFailedError
from app.db.session import get_db
from app.schemas.lead import ActorRef
from app.schemas.sync import (
    FullSyncResult,
    LastSyncInfo,
    PushRequest,
    PushResult,
    SyncResult,
    SyncRunQuery,
    SyncRunResponse,
)
from app.services.crm_session import CRMSessionManager
from app.services.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/sync", tags=["CRM Sync"])


@router.post(
    "/pull",
    response_model=SyncResult,
    summary="Import changes from the CRM",
    description="Pulls every CRM lead modified since the last completed pull. "
                "Per-record failures are listed in the result; the run itself still completes."
)
async def pull_from_crm(
    db: AsyncSession = Depends(get_db),
    actor: ActorRef = Depends(get_actor),
    engine: SyncEngine = Depends(get_sync_engine),
):
    try:
        return await engine.pull(db, triggered_by=actor.id)
    except SyncRunFailedError as e:
        raise HTTPException(status_code=e.status_code, detail={"message": e.message, "sync_run_id": str(e.sync_run_id)})
    except LeadManagementError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except Exception as e:
        logger.error("Error in pull_from_crm: %s\n%s", e, traceback.format_exc())
        raise HTTPException(status_code=500, detail="Internal Server Error")


@router.post(
    "/full",
    response_model=FullSyncResult,
    summary="Pull from the CRM, then export unsynced leads"
)
async def full_sync(
    db: AsyncSession = Depends(get_db),
    actor: ActorRef = Depends(get_actor),
    engine: SyncEngine = Depends(get_sync_engine),
):
    try:
        return await engine.full_sync(db, triggered_by=actor.id)
    except SyncRunFailedError as e:
        raise HTTPException(status_code=e.status_code, detail={"message": e.message, "sync_run_id": str(e.sync_run_id)})
    except LeadManagementError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except Exception as e:
        logger.error("Error in full_sync: %s\n%s", e, traceback.format_exc())
        raise HTTPException(status_code=500, detail="Internal Server Error")


@router.post(
    "/leads/{lead_id}/push",
    response_model=PushResult,
    summary="Push a lead to the CRM",
    description="Writes status, contact name and notes of a linked lead to its CRM record. "
                "Failures are reported with success=false."
)
async def push_lead(
    lead_id: UUID,
    request: Optional[PushRequest] = None,
    db: AsyncSession = Depends(get_db),
    actor: ActorRef = Depends(get_actor),
    engine: SyncEngine = Depends(get_sync_engine),
):
    try:
        return await engine.push(db, lead_id, request, triggered_by=actor.id)
    except LeadManagementError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except Exception as e:
        logger.error("Error in push_lead: %s\n%s", e, traceback.format_exc())
        raise HTTPException(status_code=500, detail="Internal Server Error")


@router.post("/leads/{lead_id}/export", response_model=PushResult, summary="Create a CRM record for a lead")
async def export_lead(
    lead_id: UUID,
    db: AsyncSession = Depends(get_db),
    engine: SyncEngine = Depends(get_sync_engine),
):
    try:
        return await engine.export_lead(db, lead_id)
    except LeadManagementError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except Exception as e:
        logger.error("Error in export_lead: %s\n%s", e, traceback.format_exc())
        raise HTTPException(status_code=500, detail="Internal Server Error")


@router.get("/runs", response_model=List[SyncRunResponse], summary="List sync runs")
async def list_sync_runs(
    params: SyncRunQuery = Depends(),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await SyncEngine.list_sync_runs(db, params)
    except Exception as e:
        logger.error("Error in list_sync_runs: %s\n%s", e, traceback.format_exc())
        raise HTTPException(status_code=500, detail="Internal Server Error")


@router.get("/runs/last", response_model=Optional[SyncRunResponse], summary="Last completed sync run")
async def get_last_sync_run(
    type: Optional[str] = Query(None, pattern="^(pull|push|full)$"),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await SyncEngine.get_last_completed(db, type)
    except Exception as e:
        logger.error("Error in get_last_sync_run: %s\n%s", e, traceback.format_exc())
        raise HTTPException(status_code=500, detail="Internal Server Error")


@router.get("/last", response_model=Optional[LastSyncInfo], summary="Type, time and counts of the last completed sync")
async def get_last_sync_info(db: AsyncSession = Depends(get_db)):
    try:
        return await SyncEngine.get_last_sync_info(db)
    except Exception as e:
        logger.error("Error in get_last_sync_info: %s\n%s", e, traceback.format_exc())
        raise HTTPException(status_code=500, detail="Internal Server Error")


@router.get("/health", summary="Check the CRM connection")
async def crm_health(engine: SyncEngine = Depends(get_sync_engine)):
    return await engine.crm.health_check()


@router.get("/session", summary="CRM session status")
async def crm_session_status(sessions: CRMSessionManager = Depends(get_crm_sessions)):
    return sessions.get_status()


@router.delete("/session", status_code=204, summary="Drop the cached CRM session")
async def clear_crm_session(sessions: CRMSessionManager = Depends(get_crm_sessions)):
    sessions.clear()

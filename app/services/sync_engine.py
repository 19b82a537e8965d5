import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import LeadManagementError, SyncRunFailedError, ValidationError
from app.crud import lead as crud_lead
from app.crud import sync_runs as crud_sync
from app.db.base_class import utcnow
from app.models import Lead, SyncRun, Viewing, LEAD_STATUSES
from app.schemas.crm import REMOTE_LEAD_FIELDS, RemoteLead
from app.schemas.lead import SYSTEM_ACTOR
from app.schemas.sync import (
    FullSyncResult,
    LastSyncInfo,
    PartialFailure,
    PushRequest,
    PushResult,
    SyncResult,
    SyncRunQuery,
    SyncSummary,
)
from app.services.crm_client import CRMClient
from app.services.lead_services import LeadServices
from app.services.sync_lock import SyncLock

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1)
IMPORT_SOURCE = "external_import"
VIEWING_DURATION = timedelta(hours=1)

# CRM pipeline stage -> local lead status
STAGE_TO_STATUS: Dict[str, str] = {
    "New Lead": "new",
    "Contacted": "contacted",
    "Qualified": "qualified",
    "Viewing Scheduled": "viewing",
    "Negotiation": "negotiating",
    "Won": "won",
    "Lost": "lost",
}
STATUS_TO_STAGE: Dict[str, str] = {status: stage for stage, status in STAGE_TO_STATUS.items()}


def map_stage_to_status(stage_name: Optional[str]) -> str:
    return STAGE_TO_STATUS.get(stage_name or "", "new")


def append_note(description: Optional[str], note: str, at: datetime) -> str:
    """Add a timestamped note below the existing remote description."""
    entry = f"[{at.isoformat(timespec='seconds')}]\n{note}"
    if description:
        return f"{description}\n\n{entry}"
    return entry


def _error_message(error: Exception) -> str:
    if isinstance(error, LeadManagementError):
        return error.message
    return str(error) or error.__class__.__name__


class SyncEngine:
    """
        Reconciles local leads with the external CRM.

        pull:   imports remote changes since the last completed pull (the watermark).
                Remote stage wins over the local status; local-only data is never touched.
                A bad record becomes a PartialFailure and the run carries on.
        push:   writes status, contact name and appended notes of one linked lead.
                Failures are returned as data so they never undo a local change.
        export: creates remote records for leads that are not linked yet.

        Every run is recorded as a SyncRun. Runs of the same type are serialised
        through the SyncLock so two pulls can never share a watermark.
    """

    def __init__(self, crm: CRMClient, lock: SyncLock, page_size: int = 500):
        self.crm = crm
        self.lock = lock
        self.page_size = page_size

    # --- Pull ---

    async def pull(self, db: AsyncSession, triggered_by: Optional[str] = None) -> SyncResult:
        async with self.lock.hold("pull"):
            return await self._pull(db, triggered_by)

    async def _pull(self, db: AsyncSession, triggered_by: Optional[str]) -> SyncResult:
        sync_run = await crud_sync.create_sync_run(db, "pull", triggered_by)
        sync_run_id = sync_run.sync_run_id
        logger.info("Pull sync %s started (triggered by %s)", sync_run_id, triggered_by or "system")

        try:
            watermark = await self.get_watermark(db)
            records = await self._fetch_modified(watermark)
        except Exception as e:
            message = _error_message(e)
            logger.error("Pull sync %s failed before processing records: %s", sync_run_id, message)
            await self._finish(db, sync_run, "failed", SyncSummary(), [PartialFailure(message=message)])
            raise SyncRunFailedError(sync_run_id, message) from e

        logger.info("Pull sync %s: %d remote leads modified since %s", sync_run_id, len(records), watermark)
        summary = SyncSummary()
        errors: List[PartialFailure] = []

        for raw in records:
            summary.processed += 1
            record_id = str(raw.get("id")) if isinstance(raw, dict) and raw.get("id") is not None else None
            try:
                outcome = await self._import_record(db, raw)
            except (LeadManagementError, SQLAlchemyError, ValueError) as e:
                await db.rollback()
                summary.failed += 1
                message = _error_message(e)
                errors.append(PartialFailure(record_id=record_id, message=message))
                logger.warning("Pull sync %s: remote lead %s failed: %s", sync_run_id, record_id, message)
                continue

            if outcome == "created":
                summary.created += 1
            elif outcome == "updated":
                summary.updated += 1
            else:
                summary.skipped += 1

        await self._finish(db, sync_run, "completed", summary, errors)
        logger.info(
            "Pull sync %s completed: %d processed, %d created, %d updated, %d skipped, %d failed",
            sync_run_id, summary.processed, summary.created, summary.updated, summary.skipped, summary.failed,
        )
        return SyncResult(success=True, sync_run_id=sync_run_id, summary=summary, errors=errors)

    async def _fetch_modified(self, watermark: datetime) -> List[Dict[str, Any]]:
        records: List[Dict[str, Any]] = []
        while True:
            page = await self.crm.search_leads_modified_since(
                watermark, REMOTE_LEAD_FIELDS, self.page_size, offset=len(records)
            )
            records.extend(page)
            if len(page) < self.page_size:
                return records

    async def get_watermark(self, db: AsyncSession) -> datetime:
        last = await crud_sync.get_last_completed_sync_run(db, "pull")
        if last is None or last.completed_at is None:
            return EPOCH
        return last.completed_at

    async def _import_record(self, db: AsyncSession, raw: Dict[str, Any]) -> str:
        remote = RemoteLead.model_validate(raw)
        status = map_stage_to_status(remote.stage_name)
        written_at = remote.written_at

        lead = await crud_lead.get_lead_by_external_id(db, remote.id)
        if lead is not None:
            changes: Dict[str, Any] = {}
            if lead.status != status:
                changes["status"] = status
            if lead.external_write_timestamp != written_at:
                changes["external_write_timestamp"] = written_at
            # Only the contact name is taken over from the remote side
            if remote.contact_name and remote.contact_name != lead.name:
                changes["name"] = remote.contact_name
            if not changes:
                logger.debug("Remote lead %s unchanged", remote.id)
                return "skipped"
            await crud_lead.update_lead(db, lead, **changes)
            await db.commit()
            logger.debug("Remote lead %s updated local lead %s (%s)", remote.id, lead.lead_id, ", ".join(changes))
            return "updated"

        contact = {
            "name": remote.contact_name or remote.name,
            "email": remote.email_from,
            "phone": remote.phone,
            "message": remote.description,
            "budget_range": remote.x_budget_range,
            "preferred_region": remote.x_preferred_county,
            "property_interest": remote.x_property_interest,
            "communication_preference": remote.x_communication_preference or "whatsapp",
        }
        lead = await LeadServices.create_lead(
            db,
            contact,
            IMPORT_SOURCE,
            actor=SYSTEM_ACTOR,
            status=status,
            external_id=str(remote.id),
            synced_to_external=True,
            synced_at=utcnow(),
            external_write_timestamp=written_at,
        )
        logger.debug("Remote lead %s imported as local lead %s", remote.id, lead.lead_id)
        return "created"

    # --- Push ---

    async def push(
        self,
        db: AsyncSession,
        lead_id: Any,
        updates: Union[PushRequest, Dict[str, Any], None] = None,
        triggered_by: Optional[str] = None,
    ) -> PushResult:
        """
        Write a status (as a stage), contact name and notes of a linked lead to the CRM.

        Notes are appended to the remote description, never replacing it.
        Returns success=False instead of raising when the lead is not linked
        or the CRM call fails.
        """
        if not isinstance(updates, PushRequest):
            updates = PushRequest.model_validate(updates or {})
        if updates.status and updates.status not in LEAD_STATUSES:
            raise ValidationError(f'Unrecognized lead status "{updates.status}"', field="status")
        lead = await LeadServices.get_lead(db, lead_id)
        lead_uuid, external_id = lead.lead_id, lead.external_id

        sync_run = await self._start_audit(db, "push", triggered_by)
        sync_run_id = sync_run.sync_run_id if sync_run else None

        if not external_id:
            await self._finish_audit(db, sync_run, SyncSummary(processed=1, skipped=1))
            return PushResult(
                success=False,
                message="Lead is not linked to an external CRM record",
                sync_run_id=sync_run_id,
            )

        try:
            values: Dict[str, Any] = {}
            # The remote stage is only moved when a status is pushed
            stage = STATUS_TO_STAGE.get(updates.status) if updates.status else None
            if stage:
                values["stage_id"] = await self.crm.get_stage_id(stage)
            if updates.name:
                values["contact_name"] = updates.name
            if updates.notes:
                current = await self.crm.get_lead_description(external_id)
                values["description"] = append_note(current, updates.notes, utcnow())
            if values:
                await self.crm.update_lead(external_id, values)
        except LeadManagementError as e:
            logger.error("Push of lead %s to CRM record %s failed: %s", lead_uuid, external_id, e.message)
            await self._finish_audit(
                db, sync_run, SyncSummary(processed=1, failed=1), [PartialFailure(record_id=external_id, message=e.message)]
            )
            return PushResult(success=False, message=e.message, external_id=external_id, sync_run_id=sync_run_id)

        logger.info("Lead %s pushed to CRM record %s (%s)", lead_uuid, external_id, ", ".join(values) or "no changes")
        await self._finish_audit(db, sync_run, SyncSummary(processed=1, updated=1))
        return PushResult(success=True, message="Lead updated in CRM", external_id=external_id, sync_run_id=sync_run_id)

    # --- Export ---

    async def export_lead(self, db: AsyncSession, lead_id: Any) -> PushResult:
        """Create the CRM record for a lead that is not linked yet, then link it."""
        lead = await LeadServices.get_lead(db, lead_id)
        if lead.external_id:
            return PushResult(success=True, message="Lead already synced", external_id=lead.external_id)

        lead_uuid = lead.lead_id
        try:
            values = await self._remote_values(lead)
            external_id = await self.crm.create_lead(values)
        except LeadManagementError as e:
            logger.error("Export of lead %s to CRM failed: %s", lead_uuid, e.message)
            return PushResult(success=False, message=e.message)

        await LeadServices.mark_synced(db, lead_uuid, external_id)
        logger.info("Lead %s exported to CRM record %s", lead_uuid, external_id)
        return PushResult(success=True, message="Lead exported to CRM", external_id=str(external_id))

    async def _remote_values(self, lead: Lead) -> Dict[str, Any]:
        source_id = await self.crm.get_or_create_source(self.crm.default_source)
        stage_id = await self.crm.get_stage_id(STATUS_TO_STAGE.get(lead.status, self.crm.default_stage))
        values: Dict[str, Any] = {
            "name": f"{lead.name} - {lead.subject or 'Property Inquiry'}",
            "contact_name": lead.name,
            "email_from": lead.email,
            "phone": lead.phone or "",
            "description": lead.message or "",
            "source_id": source_id,
            "stage_id": stage_id,
        }
        custom_fields = {
            "x_budget_range": lead.budget_range,
            "x_preferred_county": lead.preferred_region,
            "x_property_interest": lead.property_interest,
            "x_communication_preference": lead.communication_preference,
        }
        values.update({k: v for k, v in custom_fields.items() if v})
        return values

    async def push_viewing(self, db: AsyncSession, lead_id: Any, viewing_id: Any) -> PushResult:
        """Put a scheduled viewing of a linked lead in the CRM calendar."""
        lead = await LeadServices.get_lead(db, lead_id)
        viewing: Viewing = LeadServices._get_viewing(lead, viewing_id)
        if not lead.external_id:
            return PushResult(success=False, message="Lead is not linked to an external CRM record")

        start = datetime.fromisoformat(f"{viewing.scheduled_date}T{viewing.scheduled_time}")
        try:
            await self.crm.create_calendar_event(
                name=f"Viewing: {viewing.property_name or viewing.property_id} - {lead.name}",
                start=start,
                stop=start + VIEWING_DURATION,
                description=viewing.notes,
                opportunity_id=lead.external_id,
            )
        except LeadManagementError as e:
            logger.error("Calendar event for viewing %s failed: %s", viewing.viewing_id, e.message)
            return PushResult(success=False, message=e.message, external_id=lead.external_id)
        return PushResult(success=True, message="Viewing added to CRM calendar", external_id=lead.external_id)

    # --- Full sync ---

    async def full_sync(self, db: AsyncSession, triggered_by: Optional[str] = None) -> FullSyncResult:
        """Pull remote changes, then export every local lead that is not linked yet."""
        pull = await self.pull(db, triggered_by)

        async with self.lock.hold("full"):
            sync_run = await crud_sync.create_sync_run(db, "full", triggered_by)
            sync_run_id = sync_run.sync_run_id
            unsynced = await crud_lead.list_leads(db, synced=False, limit=self.page_size)
            lead_ids = [lead.lead_id for lead in unsynced]
            logger.info("Full sync %s: exporting %d unsynced leads", sync_run_id, len(lead_ids))

            summary = SyncSummary()
            errors: List[PartialFailure] = []
            for lead_id in lead_ids:
                summary.processed += 1
                try:
                    result = await self.export_lead(db, lead_id)
                except (LeadManagementError, SQLAlchemyError) as e:
                    await db.rollback()
                    result = PushResult(success=False, message=_error_message(e))
                if result.success:
                    summary.created += 1
                else:
                    summary.failed += 1
                    errors.append(PartialFailure(record_id=str(lead_id), message=result.message or "Export failed"))

            await self._finish(db, sync_run, "completed", summary, errors)

        export = SyncResult(success=True, sync_run_id=sync_run_id, summary=summary, errors=errors)
        return FullSyncResult(success=pull.success and export.success, pull=pull, export=export)

    # --- Audit queries ---

    @staticmethod
    async def list_sync_runs(db: AsyncSession, query: Optional[SyncRunQuery] = None) -> List[SyncRun]:
        query = query or SyncRunQuery()
        return await crud_sync.list_sync_runs(db, sync_type=query.type, status=query.status, limit=query.limit)

    @staticmethod
    async def get_last_completed(db: AsyncSession, sync_type: Optional[str] = None) -> Optional[SyncRun]:
        return await crud_sync.get_last_completed_sync_run(db, sync_type)

    @staticmethod
    async def get_last_sync_info(db: AsyncSession) -> Optional[LastSyncInfo]:
        last = await crud_sync.get_last_completed_sync_run(db)
        if last is None:
            return None
        return LastSyncInfo(
            type=last.sync_type,
            completed_at=last.completed_at,
            summary=SyncSummary(
                processed=last.total_processed,
                created=last.created_count,
                updated=last.updated_count,
                skipped=last.skipped_count,
                failed=last.failed_count,
            ),
        )

    # --- Run bookkeeping ---

    @staticmethod
    async def _finish(
        db: AsyncSession,
        sync_run: SyncRun,
        status: str,
        summary: SyncSummary,
        errors: Optional[List[PartialFailure]] = None,
    ) -> SyncRun:
        # Rolled-back record failures leave the run expired
        await db.refresh(sync_run)
        return await crud_sync.finish_sync_run(db, sync_run, status, summary, errors or [])

    @staticmethod
    async def _start_audit(db: AsyncSession, sync_type: str, triggered_by: Optional[str]) -> Optional[SyncRun]:
        try:
            return await crud_sync.create_sync_run(db, sync_type, triggered_by)
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error("Could not record %s sync run: %s", sync_type, e)
            return None

    @staticmethod
    async def _finish_audit(
        db: AsyncSession,
        sync_run: Optional[SyncRun],
        summary: SyncSummary,
        errors: Optional[List[PartialFailure]] = None,
    ) -> None:
        if sync_run is None:
            return
        try:
            await SyncEngine._finish(db, sync_run, "completed", summary, errors)
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error("Could not record result of sync run: %s", e)

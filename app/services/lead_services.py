import logging
from typing import Any, Dict, List, Optional, Type, TypeVar, Union
from uuid import uuid4

from pydantic import BaseModel, ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import NotFoundError, StateError, ValidationError
from app.crud import lead as crud_lead
from app.crud.lead_activities import append_activity, get_activities_by_lead
from app.db.base_class import utcnow
from app.models import Lead, LeadActivity, LeadPropertyInterest, Viewing, LEAD_STATUSES
from app.schemas.lead import (
    SYSTEM_ACTOR,
    ActorRef,
    AgentRef,
    CallLog,
    ContactInfo,
    EmailLog,
    PropertyInterestData,
    ViewingData,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


def _parse(model: Type[M], data: Any, what: str) -> M:
    """Build a domain input, turning pydantic errors into our ValidationError."""
    if isinstance(data, model):
        return data
    if isinstance(data, BaseModel):
        data = data.model_dump()
    try:
        return model.model_validate(data or {})
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(p) for p in first["loc"]) or None
        raise ValidationError(f"Invalid {what}: {field} - {first['msg']}", field=field) from e


def _actor(actor: Union[ActorRef, Dict[str, Any], None]) -> ActorRef:
    if actor is None:
        return SYSTEM_ACTOR
    return _parse(ActorRef, actor, "actor")


async def _commit(db: AsyncSession) -> None:
    # The aggregate mutation and its activity are persisted together or not at all
    try:
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        raise


class LeadServices:
    """
        Lead aggregate operations.

        Every mutating operation validates its input before touching the lead,
        then changes the aggregate, appends exactly one activity to the
        append-only ledger, and commits both in a single transaction.

        Lookups raise NotFoundError; invalid input raises ValidationError;
        viewing transitions out of a terminal state raise StateError.
    """

    @staticmethod
    async def get_lead(db: AsyncSession, lead_id: Any) -> Lead:
        lead = await crud_lead.get_lead_by_id(db, lead_id)
        if not lead:
            raise NotFoundError("Lead", lead_id)
        return lead

    @staticmethod
    async def create_lead(
        db: AsyncSession,
        contact_info: Union[ContactInfo, Dict[str, Any]],
        source: str,
        actor: Optional[ActorRef] = None,
        **link_fields,
    ) -> Lead:
        """
        Create a lead in status `new` (or the status given by an import) with a
        single `lead_created` activity. `link_fields` carries sync metadata
        (external_id, external_write_timestamp, ...) for leads imported from the CRM.
        """
        contact = _parse(ContactInfo, contact_info, "contact info")
        if not source or not str(source).strip():
            raise ValidationError("Lead source is required", field="source")
        status = link_fields.get("status", "new")
        if status not in LEAD_STATUSES:
            raise ValidationError(f'Unrecognized lead status "{status}"', field="status")
        who = _actor(actor)

        lead = await crud_lead.create_lead(db, contact.model_dump(), source=source, **link_fields)
        append_activity(
            lead,
            "lead_created",
            f"Lead created from {source}",
            who.id,
            who.name,
            {"source": source},
        )
        await _commit(db)
        logger.info("Lead %s created (source=%s)", lead.lead_id, source)
        return lead

    @staticmethod
    async def change_status(db: AsyncSession, lead_id: Any, new_status: str, actor: Optional[ActorRef] = None) -> Lead:
        if new_status not in LEAD_STATUSES:
            raise ValidationError(
                f'Unrecognized lead status "{new_status}"; expected one of {", ".join(LEAD_STATUSES)}',
                field="status",
            )
        who = _actor(actor)
        lead = await LeadServices.get_lead(db, lead_id)

        old_status = lead.status
        lead.status = new_status
        lead.updated_at = utcnow()
        append_activity(
            lead,
            "status_change",
            f'Status changed from "{old_status}" to "{new_status}"',
            who.id,
            who.name,
            {"old_status": old_status, "new_status": new_status},
        )
        await _commit(db)
        return lead

    @staticmethod
    async def assign(
        db: AsyncSession,
        lead_id: Any,
        agent: Union[AgentRef, Dict[str, Any]],
        actor: Optional[ActorRef] = None,
    ) -> Lead:
        """Assign or reassign the owning agent. Re-assigning the same agent is still logged."""
        agent_ref = _parse(AgentRef, agent, "agent")
        who = _actor(actor)
        lead = await LeadServices.get_lead(db, lead_id)

        previous_agent = lead.assigned_to
        now = utcnow()
        lead.assigned_to = agent_ref.id
        lead.assigned_to_name = agent_ref.name
        lead.assigned_at = now
        lead.assigned_by = who.id
        lead.updated_at = now

        verb = "reassigned" if previous_agent else "assigned"
        append_activity(
            lead,
            "assigned",
            f"Lead {verb} to {agent_ref.name or 'agent'}",
            who.id,
            who.name or "Admin",
            {"agent_id": agent_ref.id, "agent_name": agent_ref.name, "previous_agent": previous_agent},
        )
        await _commit(db)
        return lead

    @staticmethod
    async def add_note(db: AsyncSession, lead_id: Any, note: str, actor: Optional[ActorRef] = None) -> Lead:
        if not note or not note.strip():
            raise ValidationError("Note text is required", field="note")
        who = _actor(actor)
        lead = await LeadServices.get_lead(db, lead_id)

        note = note.strip()
        lead.last_note = note
        lead.updated_at = utcnow()
        append_activity(lead, "note_added", note, who.id, who.name, {"note": note})
        await _commit(db)
        return lead

    @staticmethod
    async def log_call(
        db: AsyncSession,
        lead_id: Any,
        call_data: Union[CallLog, Dict[str, Any]],
        actor: Optional[ActorRef] = None,
    ) -> Lead:
        call = _parse(CallLog, call_data, "call log")
        who = _actor(actor)
        lead = await LeadServices.get_lead(db, lead_id)

        description = f"Call logged: {call.outcome}"
        if call.duration:
            description += f" ({call.duration} mins)"
        if call.notes:
            description += f" - {call.notes}"

        now = utcnow()
        lead.last_contacted_at = now
        lead.updated_at = now
        append_activity(lead, "call_logged", description, who.id, who.name, call.model_dump())
        await _commit(db)
        return lead

    @staticmethod
    async def log_email(
        db: AsyncSession,
        lead_id: Any,
        email_data: Union[EmailLog, Dict[str, Any]],
        actor: Optional[ActorRef] = None,
    ) -> Lead:
        email = _parse(EmailLog, email_data, "email log")
        who = _actor(actor)
        lead = await LeadServices.get_lead(db, lead_id)

        now = utcnow()
        lead.last_contacted_at = now
        lead.updated_at = now
        append_activity(
            lead,
            "email_sent",
            f"Email sent: {email.subject or email.type or 'Follow-up'}",
            who.id,
            who.name,
            email.model_dump(mode="json"),
        )
        await _commit(db)
        return lead

    @staticmethod
    async def add_property_interest(
        db: AsyncSession,
        lead_id: Any,
        property_data: Union[PropertyInterestData, Dict[str, Any]],
        actor: Optional[ActorRef] = None,
    ) -> Lead:
        interest = _parse(PropertyInterestData, property_data, "property interest")
        who = _actor(actor)
        lead = await LeadServices.get_lead(db, lead_id)

        # Keyed by property id: one entry per property
        existing = lead.interested_properties.get(interest.property_id)
        if existing is None:
            lead.interested_properties[interest.property_id] = LeadPropertyInterest(
                interest_id=uuid4(),
                lead_id=lead.lead_id,
                property_id=interest.property_id,
                property_name=interest.property_name,
                notes=interest.notes,
                added_by=who.id,
                added_at=utcnow(),
            )
        else:
            if interest.property_name:
                existing.property_name = interest.property_name
            if interest.notes:
                existing.notes = interest.notes

        lead.updated_at = utcnow()
        append_activity(
            lead,
            "property_interested",
            f"Interested in property: {interest.property_name or interest.property_id}",
            who.id,
            who.name,
            interest.model_dump(),
        )
        await _commit(db)
        return lead

    # --- Viewings ---

    @staticmethod
    def _get_viewing(lead: Lead, viewing_id: Any) -> Viewing:
        viewing_uuid = crud_lead.as_uuid(viewing_id)
        viewing = lead.viewings.get(viewing_uuid) if viewing_uuid else None
        if viewing is None:
            raise NotFoundError("Viewing", viewing_id)
        return viewing

    @staticmethod
    async def schedule_viewing(
        db: AsyncSession,
        lead_id: Any,
        viewing_data: Union[ViewingData, Dict[str, Any]],
        actor: Optional[ActorRef] = None,
    ) -> Viewing:
        data = _parse(ViewingData, viewing_data, "viewing")
        who = _actor(actor)
        lead = await LeadServices.get_lead(db, lead_id)

        now = utcnow()
        viewing = Viewing(
            viewing_id=uuid4(),
            lead_id=lead.lead_id,
            property_id=data.property_id,
            property_name=data.property_name,
            scheduled_date=data.scheduled_date.isoformat(),
            scheduled_time=data.scheduled_time.strftime("%H:%M"),
            status="scheduled",
            notes=data.notes,
            created_by=who.id,
            created_at=now,
            updated_at=now,
        )
        lead.viewings[viewing.viewing_id] = viewing
        lead.updated_at = now

        append_activity(
            lead,
            "viewing_scheduled",
            f"Viewing scheduled for {data.property_name or 'property'} on {viewing.scheduled_date} at {viewing.scheduled_time}",
            who.id,
            who.name,
            {
                "viewing_id": str(viewing.viewing_id),
                "property_id": data.property_id,
                "property_name": data.property_name,
                "scheduled_date": viewing.scheduled_date,
                "scheduled_time": viewing.scheduled_time,
            },
        )
        await _commit(db)
        return viewing

    @staticmethod
    async def complete_viewing(
        db: AsyncSession,
        lead_id: Any,
        viewing_id: Any,
        outcome: str,
        notes: Optional[str] = None,
        actor: Optional[ActorRef] = None,
    ) -> Viewing:
        if not outcome or not outcome.strip():
            raise ValidationError("Viewing outcome is required", field="outcome")
        who = _actor(actor)
        lead = await LeadServices.get_lead(db, lead_id)
        viewing = LeadServices._get_viewing(lead, viewing_id)
        if viewing.is_terminal:
            raise StateError(f"Viewing {viewing.viewing_id} is already {viewing.status}")

        now = utcnow()
        viewing.status = "completed"
        viewing.outcome = outcome
        viewing.completed_notes = notes
        viewing.completed_at = now
        viewing.completed_by = who.id
        lead.updated_at = now

        description = f"Viewing completed for {viewing.property_name or 'property'}: {outcome}"
        if notes:
            description += f" - {notes}"
        append_activity(
            lead,
            "viewing_completed",
            description,
            who.id,
            who.name,
            {"viewing_id": str(viewing.viewing_id), "outcome": outcome, "notes": notes},
        )
        await _commit(db)
        return viewing

    @staticmethod
    async def cancel_viewing(
        db: AsyncSession,
        lead_id: Any,
        viewing_id: Any,
        reason: Optional[str] = None,
        actor: Optional[ActorRef] = None,
    ) -> Viewing:
        who = _actor(actor)
        lead = await LeadServices.get_lead(db, lead_id)
        viewing = LeadServices._get_viewing(lead, viewing_id)
        if viewing.is_terminal:
            raise StateError(f"Viewing {viewing.viewing_id} is already {viewing.status}")

        viewing.status = "cancelled"
        viewing.notes = f"Cancelled: {reason}" if reason else "Cancelled"
        lead.updated_at = utcnow()

        description = f"Viewing cancelled for {viewing.property_name or 'property'}"
        if reason:
            description += f": {reason}"
        append_activity(
            lead,
            "viewing_completed",
            description,
            who.id,
            who.name,
            {"viewing_id": str(viewing.viewing_id), "reason": reason, "status": "cancelled"},
        )
        await _commit(db)
        return viewing

    # --- Sync metadata ---

    @staticmethod
    async def mark_synced(db: AsyncSession, lead_id: Any, external_id: Any) -> Lead:
        """Link a lead to its CRM record. Only the sync engine calls this."""
        if external_id is None or str(external_id).strip() == "":
            raise ValidationError("External id is required", field="external_id")
        lead = await LeadServices.get_lead(db, lead_id)

        now = utcnow()
        lead.synced_to_external = True
        lead.external_id = str(external_id)
        lead.synced_at = now
        lead.updated_at = now
        append_activity(
            lead,
            "synced_to_external",
            "Lead synced to external CRM",
            SYSTEM_ACTOR.id,
            SYSTEM_ACTOR.name,
            {"external_id": str(external_id)},
        )
        await _commit(db)
        return lead

    # --- Queries ---

    @staticmethod
    async def get_activities(db: AsyncSession, lead_id: Any, limit: int = 50) -> List[LeadActivity]:
        lead = await LeadServices.get_lead(db, lead_id)
        return await get_activities_by_lead(db, lead.lead_id, limit=limit)

    @staticmethod
    async def list_leads(
        db: AsyncSession,
        status: Optional[str] = None,
        assigned_to: Optional[str] = None,
        synced: Optional[bool] = None,
        limit: int = 100,
    ) -> List[Lead]:
        if status and status not in LEAD_STATUSES:
            raise ValidationError(f'Unrecognized lead status "{status}"', field="status")
        return await crud_lead.list_leads(db, status=status, assigned_to=assigned_to, synced=synced, limit=limit)

    @staticmethod
    async def get_stats(db: AsyncSession) -> Dict[str, Any]:
        return await crud_lead.get_lead_stats(db)

import asyncio
from datetime import datetime

import pytest

from app.core.exceptions import AuthenticationError, NotFoundError, SyncRunFailedError, TransientNetworkError
from app.crud import lead as crud_lead
from app.crud import sync_runs as crud_sync
from app.schemas.sync import PushRequest
from app.services.lead_services import LeadServices
from app.services.sync_engine import EPOCH, STAGE_TO_STATUS, STATUS_TO_STAGE, SyncEngine, append_note, map_stage_to_status
from app.services.sync_lock import SyncLock


# --- Mapping helpers ---

def test_stage_mapping_round_trips():
    assert map_stage_to_status("Won") == "won"
    assert map_stage_to_status("Viewing Scheduled") == "viewing"
    assert map_stage_to_status("Proposition") == "new"
    assert map_stage_to_status(None) == "new"
    assert all(STAGE_TO_STATUS[STATUS_TO_STAGE[s]] == s for s in STATUS_TO_STAGE)


def test_append_note_keeps_existing_description():
    at = datetime(2026, 10, 1, 9, 0, 0)
    assert append_note("Initial inquiry", "Called client", at) == "Initial inquiry\n\n[2026-10-01T09:00:00]\nCalled client"
    assert append_note("", "Called client", at) == "[2026-10-01T09:00:00]\nCalled client"


# --- Pull ---

@pytest.mark.asyncio
async def test_first_pull_starts_from_epoch_and_imports(db, fake_crm, sync_engine):
    fake_crm.add_remote_lead(
        101,
        stage="Qualified",
        contact_name="Layla Haddad",
        email_from="layla@example.com",
        phone="+97150111",
        x_budget_range="2M-3M",
        x_preferred_county="Dubai Marina",
    )

    result = await sync_engine.pull(db, triggered_by="admin-1")

    assert fake_crm.search_calls == [EPOCH]
    assert result.success is True
    assert result.summary.model_dump() == {"processed": 1, "created": 1, "updated": 0, "skipped": 0, "failed": 0}

    lead = await crud_lead.get_lead_by_external_id(db, 101)
    assert lead.name == "Layla Haddad"
    assert lead.status == "qualified"
    assert lead.source == "external_import"
    assert lead.synced_to_external is True
    assert lead.budget_range == "2M-3M"
    assert lead.preferred_region == "Dubai Marina"
    assert lead.external_write_timestamp == datetime(2024, 3, 1, 9, 30, 0)
    assert [a.activity_type for a in lead.activities] == ["lead_created"]

    run = await crud_sync.get_sync_run(db, result.sync_run_id)
    assert run.status == "completed"
    assert run.sync_type == "pull"
    assert run.triggered_by == "admin-1"
    assert run.completed_at is not None


@pytest.mark.asyncio
async def test_second_pull_without_remote_changes_is_empty(db, fake_crm, sync_engine):
    fake_crm.add_remote_lead(101)
    fake_crm.add_remote_lead(102)

    first = await sync_engine.pull(db)
    second = await sync_engine.pull(db)

    assert first.summary.created == 2
    assert second.summary.model_dump() == {"processed": 0, "created": 0, "updated": 0, "skipped": 0, "failed": 0}
    first_run = await crud_sync.get_sync_run(db, first.sync_run_id)
    assert fake_crm.search_calls[1] == first_run.completed_at


@pytest.mark.asyncio
async def test_pull_never_duplicates_linked_leads(db, fake_crm, sync_engine):
    fake_crm.add_remote_lead(101, stage="Contacted")
    await sync_engine.pull(db)

    # Same record seen again (e.g. watermark lost)
    fake_crm.add_remote_lead(101, stage="Contacted", write_date="2999-01-01 00:00:00")
    result = await sync_engine.pull(db)

    assert result.summary.created == 0
    assert result.summary.updated == 1
    leads = await crud_lead.list_leads(db)
    assert len(leads) == 1
    assert leads[0].external_id == "101"


@pytest.mark.asyncio
async def test_pull_overwrites_status_and_contact_name_only(db, fake_crm, sync_engine, contact):
    lead = await LeadServices.create_lead(db, contact, "website_contact_form")
    await LeadServices.mark_synced(db, lead.lead_id, 55)
    await LeadServices.add_note(db, lead.lead_id, "Local only")
    lead = await LeadServices.get_lead(db, lead.lead_id)
    activities_before = len(lead.activities)

    fake_crm.add_remote_lead(55, stage="Won", contact_name="Jane Doe-Smith", email_from="other@example.com", phone="999")
    result = await sync_engine.pull(db)

    assert result.summary.updated == 1
    lead_id = lead.lead_id
    db.expire_all()
    lead = await LeadServices.get_lead(db, lead_id)
    assert lead.status == "won"
    assert lead.name == "Jane Doe-Smith"
    assert lead.email == "jane@example.com"
    assert lead.phone == "+971500000000"
    assert lead.last_note == "Local only"
    assert lead.external_write_timestamp == datetime(2024, 3, 1, 9, 30, 0)
    assert len(lead.activities) == activities_before


@pytest.mark.asyncio
async def test_pull_keeps_local_name_when_remote_has_none(db, fake_crm, sync_engine, contact):
    lead = await LeadServices.create_lead(db, contact, "website_contact_form")
    await LeadServices.mark_synced(db, lead.lead_id, 56)
    fake_crm.add_remote_lead(56, stage="Lost", contact_name=False)

    await sync_engine.pull(db)

    lead_id = lead.lead_id
    db.expire_all()
    lead = await LeadServices.get_lead(db, lead_id)
    assert lead.name == "Jane Doe"
    assert lead.status == "lost"


@pytest.mark.asyncio
async def test_unchanged_linked_record_is_skipped(db, fake_crm, sync_engine):
    fake_crm.add_remote_lead(101)
    await sync_engine.pull(db)
    fake_crm.records[101]["write_date"] = "2999-01-01 00:00:00"
    lead = await crud_lead.get_lead_by_external_id(db, 101)
    await crud_lead.update_lead(db, lead, external_write_timestamp=datetime(2999, 1, 1))
    await db.commit()

    result = await sync_engine.pull(db)
    assert result.summary.skipped == 1
    assert result.summary.updated == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("stage,status", list(STAGE_TO_STATUS.items()) + [("Proposition", "new")])
async def test_pulled_stage_maps_to_status(db, fake_crm, sync_engine, stage, status):
    fake_crm.add_remote_lead(300, stage=stage)
    await sync_engine.pull(db)
    lead = await crud_lead.get_lead_by_external_id(db, 300)
    assert lead.status == status


@pytest.mark.asyncio
async def test_pull_pages_through_every_modified_record(db, fake_crm):
    engine = SyncEngine(fake_crm, SyncLock(), page_size=2)
    for record_id in (1, 2, 3, 4):
        fake_crm.add_remote_lead(record_id, write_date=f"2024-03-0{record_id} 09:30:00")

    result = await engine.pull(db)

    assert fake_crm.search_offsets == [0, 2, 4]
    assert result.summary.processed == 4
    assert result.summary.created == 4
    leads = await crud_lead.list_leads(db, synced=True)
    assert {l.external_id for l in leads} == {"1", "2", "3", "4"}

    fake_crm.add_remote_lead(5, write_date="2999-01-01 00:00:00")
    second = await engine.pull(db)
    assert second.summary.created == 1
    assert await crud_lead.get_lead_by_external_id(db, 5) is not None


@pytest.mark.asyncio
async def test_bad_record_does_not_abort_the_batch(db, fake_crm, sync_engine):
    for record_id in (1, 2, 3, 4, 5):
        fake_crm.add_remote_lead(record_id)
    fake_crm.records[3]["email_from"] = False

    result = await sync_engine.pull(db)

    assert result.summary.processed == 5
    assert result.summary.failed == 1
    assert result.summary.created == 4
    assert [e.record_id for e in result.errors] == ["3"]
    assert "email" in result.errors[0].message
    assert {l.external_id for l in await crud_lead.list_leads(db)} == {"1", "2", "4", "5"}

    run = await crud_sync.get_sync_run(db, result.sync_run_id)
    assert run.status == "completed"
    assert run.failed_count == 1
    assert run.errors[0]["record_id"] == "3"


@pytest.mark.asyncio
async def test_malformed_record_is_a_partial_failure(db, fake_crm, sync_engine):
    fake_crm.add_remote_lead(1)
    fake_crm.add_remote_lead(2, write_date="2024-13-45 99:99:99")

    result = await sync_engine.pull(db)

    assert result.summary.created == 1
    assert result.summary.failed == 1
    assert result.errors[0].record_id == "2"


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [AuthenticationError(), TransientNetworkError("CRM unreachable")])
async def test_pull_that_cannot_start_is_failed_and_keeps_watermark(db, fake_crm, sync_engine, error):
    fake_crm.add_remote_lead(1)
    first = await sync_engine.pull(db)
    first_run = await crud_sync.get_sync_run(db, first.sync_run_id)

    fake_crm.fail_search = error
    with pytest.raises(SyncRunFailedError) as exc_info:
        await sync_engine.pull(db)

    failed = await crud_sync.get_sync_run(db, exc_info.value.sync_run_id)
    assert failed.status == "failed"
    assert failed.completed_at is not None
    assert failed.errors[0]["message"] == error.message

    fake_crm.fail_search = None
    await sync_engine.pull(db)
    assert fake_crm.search_calls[-1] == first_run.completed_at
    assert await sync_engine.get_watermark(db) != first_run.completed_at


@pytest.mark.asyncio
async def test_concurrent_pulls_are_serialised(session_factory, fake_crm, sync_engine):
    fake_crm.add_remote_lead(101)
    original = fake_crm.search_leads_modified_since
    active = []
    overlaps = []

    async def slow_search(watermark, fields, limit, offset=0):
        active.append(watermark)
        if len(active) > 1:
            overlaps.append(watermark)
        await asyncio.sleep(0.02)
        try:
            return await original(watermark, fields, limit, offset)
        finally:
            active.pop()

    fake_crm.search_leads_modified_since = slow_search

    async def run_pull():
        async with session_factory() as session:
            return await sync_engine.pull(session)

    first, second = await asyncio.gather(run_pull(), run_pull())

    assert overlaps == []
    assert sorted([first.summary.created, second.summary.created]) == [0, 1]
    assert fake_crm.search_calls[0] == EPOCH
    assert fake_crm.search_calls[1] != EPOCH


# --- Push ---

@pytest.mark.asyncio
async def test_push_appends_note_to_remote_description(db, fake_crm, sync_engine, contact):
    lead = await LeadServices.create_lead(db, contact, "website_contact_form")
    fake_crm.add_remote_lead(77, description="Initial inquiry")
    await LeadServices.mark_synced(db, lead.lead_id, 77)

    result = await sync_engine.push(db, lead.lead_id, {"notes": "Called client"})

    assert result.success is True
    assert result.external_id == "77"
    description = fake_crm.records[77]["description"]
    assert description.startswith("Initial inquiry\n\n[")
    assert description.endswith("]\nCalled client")

    await sync_engine.push(db, lead.lead_id, PushRequest(notes="Sent floor plans"))
    description = fake_crm.records[77]["description"]
    assert "Initial inquiry" in description
    assert "Called client" in description
    assert description.endswith("Sent floor plans")


@pytest.mark.asyncio
async def test_push_maps_status_to_stage(db, fake_crm, sync_engine, contact):
    lead = await LeadServices.create_lead(db, contact, "website_contact_form")
    fake_crm.add_remote_lead(78)
    await LeadServices.mark_synced(db, lead.lead_id, 78)
    await LeadServices.change_status(db, lead.lead_id, "negotiating")

    result = await sync_engine.push(db, lead.lead_id, {"status": "negotiating", "name": "Jane D."})

    assert result.success is True
    external_id, values = fake_crm.writes[-1]
    assert external_id == 78
    assert values == {"stage_id": fake_crm.stages["Negotiation"], "contact_name": "Jane D."}

    run = await crud_sync.get_sync_run(db, result.sync_run_id)
    assert run.sync_type == "push"
    assert run.updated_count == 1


@pytest.mark.asyncio
async def test_push_of_unlinked_lead_is_not_an_error(db, fake_crm, sync_engine, contact):
    lead = await LeadServices.create_lead(db, contact, "website_contact_form")

    result = await sync_engine.push(db, lead.lead_id, {"notes": "hello"})

    assert result.success is False
    assert "not linked" in result.message
    assert fake_crm.writes == []
    run = await crud_sync.get_sync_run(db, result.sync_run_id)
    assert run.skipped_count == 1


@pytest.mark.asyncio
async def test_push_failure_is_returned_as_data(db, fake_crm, sync_engine, contact):
    lead = await LeadServices.create_lead(db, contact, "website_contact_form")
    fake_crm.add_remote_lead(79)
    await LeadServices.mark_synced(db, lead.lead_id, 79)
    lead = await LeadServices.change_status(db, lead.lead_id, "won")
    fake_crm.fail_write = TransientNetworkError("CRM unreachable")

    result = await sync_engine.push(db, lead.lead_id, {"status": "won"})

    assert result.success is False
    assert result.message == "CRM unreachable"
    run = await crud_sync.get_sync_run(db, result.sync_run_id)
    assert run.failed_count == 1
    assert run.errors[0]["record_id"] == "79"
    # The local change stands
    assert (await LeadServices.get_lead(db, lead.lead_id)).status == "won"


@pytest.mark.asyncio
async def test_push_with_unmapped_stage_writes_nothing(db, fake_crm, sync_engine, contact):
    lead = await LeadServices.create_lead(db, contact, "website_contact_form")
    fake_crm.add_remote_lead(80)
    await LeadServices.mark_synced(db, lead.lead_id, 80)
    del fake_crm.stages["New Lead"]

    result = await sync_engine.push(db, lead.lead_id, {"status": "new", "notes": "x"})

    assert result.success is False
    assert "New Lead" in result.message
    assert fake_crm.writes == []


@pytest.mark.asyncio
async def test_notes_only_push_leaves_remote_stage_alone(db, fake_crm, sync_engine, contact):
    lead = await LeadServices.create_lead(db, contact, "website_contact_form")
    fake_crm.add_remote_lead(81, stage="Won", description="Initial inquiry")
    await LeadServices.mark_synced(db, lead.lead_id, 81)
    del fake_crm.stages["New Lead"]

    result = await sync_engine.push(db, lead.lead_id, {"notes": "Called client"})

    assert result.success is True
    external_id, values = fake_crm.writes[-1]
    assert external_id == 81
    assert list(values) == ["description"]
    assert fake_crm.records[81]["stage_id"] == [fake_crm.stages["Won"], "Won"]


@pytest.mark.asyncio
async def test_push_unknown_lead(db, sync_engine):
    with pytest.raises(NotFoundError):
        await sync_engine.push(db, "00000000-0000-0000-0000-000000000000", {})


# --- Export and full sync ---

@pytest.mark.asyncio
async def test_export_creates_remote_lead_and_links(db, fake_crm, sync_engine):
    lead = await LeadServices.create_lead(
        db,
        {"name": "Ravi", "email": "ravi@example.com", "subject": "Townhouse", "budget_range": "1M-2M"},
        "website_contact_form",
    )
    await LeadServices.change_status(db, lead.lead_id, "qualified")

    result = await sync_engine.export_lead(db, lead.lead_id)

    assert result.success is True
    remote = fake_crm.records[int(result.external_id)]
    assert remote["name"] == "Ravi - Townhouse"
    assert remote["email_from"] == "ravi@example.com"
    assert remote["stage_id"] == fake_crm.stages["Qualified"]
    assert remote["source_id"] == fake_crm.sources["Website"]
    assert remote["x_budget_range"] == "1M-2M"
    assert remote["x_communication_preference"] == "whatsapp"

    lead = await LeadServices.get_lead(db, lead.lead_id)
    assert lead.external_id == result.external_id
    assert lead.activities[0].activity_type == "synced_to_external"

    again = await sync_engine.export_lead(db, lead.lead_id)
    assert again.message == "Lead already synced"
    assert len(fake_crm.records) == 1


@pytest.mark.asyncio
async def test_full_sync_pulls_then_exports(db, fake_crm, sync_engine, contact):
    fake_crm.add_remote_lead(101)
    await LeadServices.create_lead(db, contact, "website_contact_form")
    await LeadServices.create_lead(db, {"name": "Sam", "email": "sam@example.com"}, "referral")

    result = await sync_engine.full_sync(db, triggered_by="admin-1")

    assert result.success is True
    assert result.pull.summary.created == 1
    assert result.export.summary.processed == 2
    assert result.export.summary.created == 2
    assert await crud_lead.list_leads(db, synced=False) == []

    runs = await sync_engine.list_sync_runs(db)
    assert sorted(r.sync_type for r in runs) == ["full", "pull"]

    info = await sync_engine.get_last_sync_info(db)
    assert info.type == "full"
    assert info.summary.created == 2

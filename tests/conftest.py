"""Shared fixtures: in-memory database, fake CRM and a wired sync engine."""

from datetime import datetime
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import app.models  # noqa: F401
from app.core.exceptions import UnmappedStageError
from app.db.base_class import Base, utcnow
from app.schemas.crm import format_remote_datetime
from app.services.sync_engine import STAGE_TO_STATUS, SyncEngine
from app.services.sync_lock import SyncLock


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


class FakeCRM:
    """In-memory stand-in for CRMClient with the same coroutine interface."""

    default_source = "Website"
    default_stage = "New Lead"

    def __init__(self):
        self.records: Dict[int, Dict[str, Any]] = {}
        self.stages: Dict[str, int] = {name: i for i, name in enumerate(STAGE_TO_STATUS, start=1)}
        self.sources: Dict[str, int] = {}
        self.writes: List[tuple] = []
        self.calendar_events: List[Dict[str, Any]] = []
        self.search_calls: List[datetime] = []
        self.search_offsets: List[int] = []
        self.fail_search: Optional[Exception] = None
        self.fail_write: Optional[Exception] = None
        self._next_id = 1000

    def add_remote_lead(
        self,
        record_id: int,
        stage: str = "New Lead",
        write_date: str = "2024-03-01 09:30:00",
        **fields: Any,
    ) -> Dict[str, Any]:
        record = {
            "id": record_id,
            "name": f"Inquiry {record_id}",
            "contact_name": f"Contact {record_id}",
            "email_from": f"contact{record_id}@example.com",
            "phone": False,
            "description": False,
            "stage_id": [self.stages.get(stage, 99), stage],
            "create_date": write_date,
            "write_date": write_date,
            "x_budget_range": False,
            "x_preferred_county": False,
            "x_property_interest": False,
            "x_communication_preference": False,
        }
        record.update(fields)
        self.records[record_id] = record
        return record

    async def search_leads_modified_since(self, watermark: datetime, fields: List[str], limit: int, offset: int = 0):
        if offset == 0:
            self.search_calls.append(watermark)
        self.search_offsets.append(offset)
        if self.fail_search:
            raise self.fail_search
        boundary = format_remote_datetime(watermark)
        changed = sorted(
            (dict(r) for r in self.records.values() if r["write_date"] > boundary),
            key=lambda r: (r["write_date"], r["id"]),
        )
        return changed[offset:offset + limit]

    async def get_stage_id(self, stage_name: str) -> int:
        if stage_name not in self.stages:
            raise UnmappedStageError(stage_name)
        return self.stages[stage_name]

    async def get_lead_description(self, external_id: Any) -> str:
        return self.records[int(external_id)].get("description") or ""

    async def update_lead(self, external_id: Any, values: Dict[str, Any]) -> bool:
        if self.fail_write:
            raise self.fail_write
        self.writes.append((int(external_id), values))
        self.records[int(external_id)].update(values)
        return True

    async def get_or_create_source(self, source_name: str) -> int:
        return self.sources.setdefault(source_name, len(self.sources) + 1)

    async def create_lead(self, values: Dict[str, Any]) -> int:
        self._next_id += 1
        now = format_remote_datetime(utcnow())
        self.records[self._next_id] = {"id": self._next_id, "write_date": now, **values}
        return self._next_id

    async def create_calendar_event(self, **kwargs: Any) -> int:
        self.calendar_events.append(kwargs)
        return len(self.calendar_events)

    async def health_check(self) -> Dict[str, Any]:
        return {"success": True, "authenticated": True, "database": "test", "url": "http://crm.test"}


@pytest.fixture
def fake_crm() -> FakeCRM:
    return FakeCRM()


@pytest.fixture
def sync_engine(fake_crm) -> SyncEngine:
    return SyncEngine(fake_crm, SyncLock(), page_size=500)


@pytest.fixture
def contact() -> Dict[str, Any]:
    return {"name": "Jane Doe", "email": "jane@example.com", "phone": "+971500000000"}

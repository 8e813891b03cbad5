"""
Integration tests for the PostgreSQL structured store.

Skipped when no PostgreSQL with pgvector is reachable at DATABASE_URL.
"""

import os
import uuid
from datetime import date, datetime, timezone

import pytest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from chartrecall.core.errors import SummaryAlreadyExists
from chartrecall.core.types import (
    DateRange,
    EncounterFilter,
    EncounterStatus,
    SummaryRecord,
    SummaryTier,
)
from chartrecall.db.models import Base, Document, Encounter, Patient
from chartrecall.db.postgres import DEFAULT_DATABASE_URL
from chartrecall.db.store import ORDER_CHRONOLOGICAL, SqlStructuredStore

TEST_DATABASE_URL = os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL)

pytestmark = [pytest.mark.requires_db, pytest.mark.integration]


@pytest.fixture
async def engine():
    engine = create_async_engine(TEST_DATABASE_URL)
    try:
        async with engine.begin() as conn:
            await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
            await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)
    except (ConnectionError, OSError, Exception) as e:
        await engine.dispose()
        pytest.skip(f"PostgreSQL not available: {e}")
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
async def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def seeded(session_maker):
    """Patients 12345 and 1234; two closed visits and one active visit for 12345."""
    p12345 = Patient(id=uuid.uuid4(), mrn="12345", full_name="Ana Cruz", date_of_birth=date(1970, 5, 1))
    p1234 = Patient(id=uuid.uuid4(), mrn="1234", full_name="Ben Reyes")
    visits = [
        Encounter(
            id=uuid.uuid4(),
            patient_id=p12345.id,
            encounter_type="outpatient",
            start_date=datetime(2024, month, 3, 9, tzinfo=timezone.utc),
            end_date=datetime(2024, month, 3, 17, tzinfo=timezone.utc),
            status="closed",
        )
        for month in (2, 8)
    ]
    active = Encounter(
        id=uuid.uuid4(),
        patient_id=p12345.id,
        encounter_type="inpatient",
        start_date=datetime(2024, 9, 1, 9, tzinfo=timezone.utc),
        status="active",
    )
    note = Document(
        id=uuid.uuid4(),
        encounter_id=visits[0].id,
        patient_id=p12345.id,
        document_type="progress_note",
        document_date=visits[0].start_date,
        storage_path=f"{p12345.id}/note.txt",
        size_bytes=120,
    )
    async with session_maker() as session:
        session.add_all([p12345, p1234])
        await session.flush()
        session.add_all([*visits, active])
        await session.flush()
        session.add(note)
        await session.commit()
    return {"p12345": p12345, "visits": visits, "active": active, "note": note}


@pytest.mark.asyncio
async def test_exact_mrn_lookup(session_maker, seeded):
    store = SqlStructuredStore(session_maker)
    patient = await store.get_patient_by_mrn("1234")
    assert patient.full_name == "Ben Reyes"
    assert await store.get_patient_by_mrn("123") is None


@pytest.mark.asyncio
async def test_encounter_filters_and_order(session_maker, seeded):
    store = SqlStructuredStore(session_maker)
    patient_id = str(seeded["p12345"].id)

    closed = await store.list_encounters(
        patient_id,
        EncounterFilter(
            statuses=frozenset({EncounterStatus.CLOSED}),
            date_range=DateRange(date(2024, 1, 1), date(2024, 12, 31)),
        ),
        order=ORDER_CHRONOLOGICAL,
    )
    assert [e.id for e in closed] == [str(v.id) for v in seeded["visits"]]

    single_day = await store.list_encounters(
        patient_id, EncounterFilter(date_range=DateRange(date(2024, 8, 3), date(2024, 8, 3)))
    )
    assert [e.id for e in single_day] == [str(seeded["visits"][1].id)]


@pytest.mark.asyncio
async def test_documents_by_encounter(session_maker, seeded):
    store = SqlStructuredStore(session_maker)
    documents = await store.list_documents([str(seeded["visits"][0].id)])
    assert [d.id for d in documents] == [str(seeded["note"].id)]
    assert await store.list_documents([]) == []


@pytest.mark.asyncio
async def test_summary_key_is_unique(session_maker, seeded):
    store = SqlStructuredStore(session_maker)
    record = SummaryRecord(
        patient_id=str(seeded["p12345"].id),
        tier=SummaryTier.QUARTERLY,
        period_start=date(2024, 1, 1),
        period_end=date(2024, 3, 31),
        summary_text="Stable.",
        encounter_count=1,
    )

    stored = await store.put_summary_record(record)
    assert stored.id is not None

    with pytest.raises(SummaryAlreadyExists):
        await store.put_summary_record(record)

    found = await store.get_summary_records(
        record.patient_id, SummaryTier.QUARTERLY, DateRange(date(2024, 2, 1), date(2024, 2, 28))
    )
    assert [r.id for r in found] == [stored.id]


@pytest.mark.asyncio
async def test_encounter_summaries_are_unique_per_encounter(session_maker, seeded):
    store = SqlStructuredStore(session_maker)
    patient_id = str(seeded["p12345"].id)
    day = date(2024, 2, 3)

    def encounter_summary(encounter_id: str, text: str) -> SummaryRecord:
        return SummaryRecord(
            patient_id=patient_id,
            tier=SummaryTier.ENCOUNTER,
            period_start=day,
            period_end=day,
            summary_text=text,
            encounter_id=encounter_id,
            encounter_count=1,
        )

    first = await store.put_summary_record(encounter_summary(str(seeded["visits"][0].id), "A"))
    second = await store.put_summary_record(encounter_summary(str(seeded["active"].id), "B"))
    assert first.id != second.id

    with pytest.raises(SummaryAlreadyExists):
        await store.put_summary_record(encounter_summary(str(seeded["visits"][0].id), "C"))

    found = await store.get_summary_records(
        patient_id, SummaryTier.ENCOUNTER, DateRange(day, day)
    )
    assert sorted(r.summary_text for r in found) == ["A", "B"]

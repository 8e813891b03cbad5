"""
ChartRecall Structured Store

The structured-store capability the core consumes, plus its PostgreSQL
implementation. All lookups are exact-match on identifiers; nothing here
ever ranks by similarity.

Operations:
- get_patient_by_mrn: exact MRN lookup
- get_encounter: single encounter by id
- list_encounters: encounters of one patient, filtered and ordered
- list_documents: documents of the given encounters, filtered
- get_summary_records: summaries of one tier overlapping a range
- put_summary_record: idempotent insert keyed on (patient, tier, period)
"""

import logging
import uuid
from datetime import date, datetime, time, timedelta, timezone
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chartrecall.core.errors import SummaryAlreadyExists
from chartrecall.core.types import (
    DateRange,
    DocumentFilter,
    DocumentRecord,
    DocumentType,
    EncounterFilter,
    EncounterRecord,
    EncounterStatus,
    EncounterType,
    PatientRecord,
    SummaryRecord,
    SummaryTier,
)
from chartrecall.db.models import Document, Encounter, Patient, SummaryRecordRow

logger = logging.getLogger(__name__)

ORDER_RECENT_FIRST = "desc"
ORDER_CHRONOLOGICAL = "asc"


class StructuredStore(Protocol):
    """Read-mostly structured store contract."""

    async def get_patient_by_mrn(self, mrn: str) -> PatientRecord | None: ...

    async def get_encounter(self, encounter_id: str) -> EncounterRecord | None: ...

    async def list_encounters(
        self,
        patient_id: str,
        filters: EncounterFilter | None = None,
        order: str = ORDER_RECENT_FIRST,
    ) -> list[EncounterRecord]: ...

    async def list_documents(
        self,
        encounter_ids: list[str],
        filters: DocumentFilter | None = None,
    ) -> list[DocumentRecord]: ...

    async def get_summary_records(
        self,
        patient_id: str,
        tier: SummaryTier,
        date_range: DateRange,
    ) -> list[SummaryRecord]: ...

    async def put_summary_record(self, record: SummaryRecord) -> SummaryRecord: ...


# ============================================
# Row Mapping
# ============================================


def _day_start(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def patient_from_row(row: Patient) -> PatientRecord:
    return PatientRecord(
        id=str(row.id),
        mrn=row.mrn,
        full_name=row.full_name,
        date_of_birth=row.date_of_birth,
        sex=row.sex,
    )


def encounter_from_row(row: Encounter) -> EncounterRecord:
    return EncounterRecord(
        id=str(row.id),
        patient_id=str(row.patient_id),
        encounter_type=EncounterType(row.encounter_type),
        start_date=row.start_date,
        end_date=row.end_date,
        status=EncounterStatus(row.status),
    )


def document_from_row(row: Document) -> DocumentRecord:
    return DocumentRecord(
        id=str(row.id),
        encounter_id=str(row.encounter_id),
        patient_id=str(row.patient_id),
        document_type=DocumentType(row.document_type),
        document_date=row.document_date,
        storage_path=row.storage_path,
        size_bytes=row.size_bytes,
        title=row.title,
    )


def summary_from_row(row: SummaryRecordRow) -> SummaryRecord:
    return SummaryRecord(
        id=str(row.id),
        patient_id=str(row.patient_id),
        tier=SummaryTier(row.tier),
        period_start=row.period_start,
        period_end=row.period_end,
        summary_text=row.summary_text,
        encounter_id=str(row.encounter_id) if row.encounter_id else None,
        encounter_count=row.encounter_count,
        created_at=row.created_at,
    )


# ============================================
# PostgreSQL Implementation
# ============================================


class SqlStructuredStore:
    """StructuredStore backed by PostgreSQL. One short session per call."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def get_patient_by_mrn(self, mrn: str) -> PatientRecord | None:
        async with self._session_maker() as session:
            result = await session.execute(select(Patient).where(Patient.mrn == mrn))
            row = result.scalar_one_or_none()
            return patient_from_row(row) if row else None

    async def get_encounter(self, encounter_id: str) -> EncounterRecord | None:
        async with self._session_maker() as session:
            row = await session.get(Encounter, uuid.UUID(encounter_id))
            return encounter_from_row(row) if row else None

    async def list_encounters(
        self,
        patient_id: str,
        filters: EncounterFilter | None = None,
        order: str = ORDER_RECENT_FIRST,
    ) -> list[EncounterRecord]:
        filters = filters or EncounterFilter()
        stmt = select(Encounter).where(Encounter.patient_id == uuid.UUID(patient_id))

        if filters.encounter_types:
            stmt = stmt.where(
                Encounter.encounter_type.in_([t.value for t in filters.encounter_types])
            )
        if filters.statuses:
            stmt = stmt.where(Encounter.status.in_([s.value for s in filters.statuses]))
        if filters.date_range is not None:
            stmt = stmt.where(
                Encounter.start_date >= _day_start(filters.date_range.start),
                Encounter.start_date < _day_start(filters.date_range.end + timedelta(days=1)),
            )

        if order == ORDER_CHRONOLOGICAL:
            stmt = stmt.order_by(Encounter.start_date.asc(), Encounter.id.asc())
        else:
            stmt = stmt.order_by(Encounter.start_date.desc(), Encounter.id.desc())

        async with self._session_maker() as session:
            result = await session.execute(stmt)
            return [encounter_from_row(row) for row in result.scalars().all()]

    async def list_documents(
        self,
        encounter_ids: list[str],
        filters: DocumentFilter | None = None,
    ) -> list[DocumentRecord]:
        if not encounter_ids:
            return []
        filters = filters or DocumentFilter()
        stmt = select(Document).where(
            Document.encounter_id.in_([uuid.UUID(e) for e in encounter_ids])
        )
        if filters.document_types:
            stmt = stmt.where(
                Document.document_type.in_([t.value for t in filters.document_types])
            )
        stmt = stmt.order_by(Document.document_date.desc(), Document.id.desc())

        async with self._session_maker() as session:
            result = await session.execute(stmt)
            return [document_from_row(row) for row in result.scalars().all()]

    async def get_summary_records(
        self,
        patient_id: str,
        tier: SummaryTier,
        date_range: DateRange,
    ) -> list[SummaryRecord]:
        stmt = (
            select(SummaryRecordRow)
            .where(
                SummaryRecordRow.patient_id == uuid.UUID(patient_id),
                SummaryRecordRow.tier == tier.value,
                SummaryRecordRow.period_start <= date_range.end,
                SummaryRecordRow.period_end >= date_range.start,
            )
            .order_by(SummaryRecordRow.period_start.asc())
        )
        async with self._session_maker() as session:
            result = await session.execute(stmt)
            return [summary_from_row(row) for row in result.scalars().all()]

    async def put_summary_record(self, record: SummaryRecord) -> SummaryRecord:
        """
        Insert a summary; raise SummaryAlreadyExists if the key is taken.

        The key is the period for aggregate tiers and the encounter for the
        encounter tier (partial unique indexes uq_summary_period and
        uq_summary_encounter).
        """
        stmt = (
            insert(SummaryRecordRow)
            .values(
                id=uuid.uuid4(),
                patient_id=uuid.UUID(record.patient_id),
                tier=record.tier.value,
                period_start=record.period_start,
                period_end=record.period_end,
                encounter_id=uuid.UUID(record.encounter_id) if record.encounter_id else None,
                encounter_count=record.encounter_count,
                summary_text=record.summary_text,
                created_at=datetime.now(timezone.utc),
            )
            .on_conflict_do_nothing()
            .returning(SummaryRecordRow.id, SummaryRecordRow.created_at)
        )
        async with self._session_maker() as session:
            result = await session.execute(stmt)
            inserted = result.first()
            await session.commit()

        if inserted is None:
            logger.info(
                "Summary already stored for patient=%s tier=%s period=%s..%s",
                record.patient_id,
                record.tier.value,
                record.period_start,
                record.period_end,
            )
            raise SummaryAlreadyExists(
                f"{record.tier.value} summary for {record.period} already exists"
            )

        return SummaryRecord(
            id=str(inserted.id),
            patient_id=record.patient_id,
            tier=record.tier,
            period_start=record.period_start,
            period_end=record.period_end,
            summary_text=record.summary_text,
            encounter_id=record.encounter_id,
            encounter_count=record.encounter_count,
            created_at=inserted.created_at,
        )
